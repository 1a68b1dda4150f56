"""
Shared fixtures for the session tests: a small catalog (one context with
three components), a manager on a temporary database, and a driver helper
that answers the pending command.
"""

import os
import sys
import tempfile

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from sessions.catalog import Component, InMemoryCatalog, Project
from sessions.runtime import SessionManager
from sessions.store import SessionStore
from sessions.types import Result, Scope

ACCOUNT = "acme"
SCOPE = Scope(account_id=ACCOUNT, user_id="u1", project_id="prj_shop")
OTHER_SCOPE = Scope(account_id="globex", user_id="u9")

CONTEXT_ID = "cmp_accounts"
COMPONENT_IDS = ["cmp_user", "cmp_user_repository", "cmp_password_hasher"]


def build_catalog() -> InMemoryCatalog:
    catalog = InMemoryCatalog()
    catalog.add_project(Project(
        project_id="prj_shop", name="Shop", module_name="Shop", account_id=ACCOUNT,
    ))
    catalog.add_component(Component(
        component_id=CONTEXT_ID, project_id="prj_shop", name="Accounts",
        module_name="Shop.Accounts", type="context",
    ))
    catalog.add_component(Component(
        component_id="cmp_user", project_id="prj_shop", name="User",
        module_name="Shop.Accounts.User", type="schema",
        parent_component_id=CONTEXT_ID, priority=10,
    ))
    catalog.add_component(Component(
        component_id="cmp_user_repository", project_id="prj_shop", name="UserRepository",
        module_name="Shop.Accounts.UserRepository",
        parent_component_id=CONTEXT_ID, priority=5,
    ))
    catalog.add_component(Component(
        component_id="cmp_password_hasher", project_id="prj_shop", name="PasswordHasher",
        module_name="Shop.Accounts.PasswordHasher",
        parent_component_id=CONTEXT_ID,
    ))
    return catalog


def subject(component_id: str) -> dict:
    return {"component_id": component_id, "project_id": "prj_shop"}


class ManagerFixture:
    """Temporary database plus a manager wired to the test catalog."""

    def __init__(self, **kwargs):
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "sessions.db")
        kwargs.setdefault("catalog", build_catalog())
        self.manager = SessionManager(store=SessionStore(self.db_path), **kwargs)

    def second_manager(self, **kwargs) -> SessionManager:
        """Another manager on the same database file."""
        kwargs.setdefault("catalog", self.manager.catalog)
        return SessionManager(store=SessionStore(self.db_path), **kwargs)

    def close(self):
        self.manager.close()
        self._tmp.cleanup()


def answer(manager: SessionManager, session_id: str, result: Result, scope: Scope = SCOPE):
    """Fetch the next command, submit ``result`` for it, return (interaction, session)."""
    interaction = manager.next_command(scope, session_id)
    session = manager.submit_result(scope, session_id, interaction.interaction_id, result)
    return interaction, session


PASSING_RUN = {"execution_status": "passed", "stats": {"tests": 4, "failures": 0}, "failures": []}
FAILING_RUN = {
    "execution_status": "failed",
    "stats": {"tests": 4, "failures": 1},
    "failures": [{
        "full_title": "User validates email",
        "error": {"message": "expected invalid email to be rejected"},
    }],
}
