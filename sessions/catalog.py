"""
Session Orchestrator — Subject Catalog

Boundary to the business-entity catalog (projects and components). The engine
treats subject references as opaque ids; steps resolve them through a Catalog
to build commands. InMemoryCatalog is the default implementation and can be
loaded from a YAML file:

    projects:
      - project_id: p1
        name: Shop
        module_name: Shop
    components:
      - component_id: c1
        project_id: p1
        name: Accounts
        module_name: Shop.Accounts
        type: context
      - component_id: c2
        project_id: p1
        parent_component_id: c1
        name: User
        module_name: Shop.Accounts.User
        type: schema
        priority: 5
"""

from __future__ import annotations

import re
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from sessions.types import Scope


@dataclass
class Project:
    project_id: str
    name: str
    module_name: str = ""
    description: str = ""
    account_id: str = ""


@dataclass
class Component:
    component_id: str
    project_id: str
    name: str
    module_name: str
    type: str = "module"
    description: str = ""
    parent_component_id: str | None = None
    priority: int = 0


class Catalog(Protocol):
    """What steps need to know about the subjects they act on."""

    def get_project(self, scope: Scope, project_id: str) -> Project | None: ...

    def get_component(self, scope: Scope, component_id: str) -> Component | None: ...

    def child_components(self, scope: Scope, component_id: str) -> list[Component]: ...


class InMemoryCatalog:
    """Dict-backed catalog for tests, the CLI, and single-tenant servers."""

    def __init__(
        self,
        projects: list[Project] | None = None,
        components: list[Component] | None = None,
    ):
        self._projects: dict[str, Project] = {p.project_id: p for p in projects or []}
        self._components: dict[str, Component] = {c.component_id: c for c in components or []}

    def add_project(self, project: Project) -> Project:
        self._projects[project.project_id] = project
        return project

    def add_component(self, component: Component) -> Component:
        self._components[component.component_id] = component
        return component

    def get_project(self, scope: Scope, project_id: str) -> Project | None:
        project = self._projects.get(project_id)
        if project and project.account_id and project.account_id != scope.account_id:
            return None
        return project

    def get_component(self, scope: Scope, component_id: str) -> Component | None:
        component = self._components.get(component_id)
        if component is None:
            return None
        if self.get_project(scope, component.project_id) is None:
            return None
        return component

    def child_components(self, scope: Scope, component_id: str) -> list[Component]:
        """Children ordered by priority (highest first), then name."""
        children = [
            c for c in self._components.values()
            if c.parent_component_id == component_id
            and self.get_project(scope, c.project_id) is not None
        ]
        return sorted(children, key=lambda c: (-c.priority, c.name))

    @staticmethod
    def from_dict(data: dict[str, Any]) -> InMemoryCatalog:
        projects = [Project(**p) for p in data.get("projects", [])]
        components = [Component(**c) for c in data.get("components", [])]
        return InMemoryCatalog(projects=projects, components=components)

    @staticmethod
    def from_yaml(path: str | Path) -> InMemoryCatalog:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return InMemoryCatalog.from_dict(data)


# ═══════════════════════════════════════════════════════════════════
# File Layout
# ═══════════════════════════════════════════════════════════════════

_DEFAULT_TEMPLATES = {
    "design_file": "docs/design/{module_path}.md",
    "code_file": "lib/{module_path}.py",
    "test_file": "test/{module_path}_test.py",
    "spec_file": "docs/spec/{module_path}.spec.md",
    "review_file": "docs/design/{module_path}/design_review.md",
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def module_path(module_name: str) -> str:
    """
    "Shop.Accounts.UserToken" -> "shop/accounts/user_token".
    Already snake_cased dotted names pass through unchanged.
    """
    parts = [p for p in module_name.split(".") if p]
    return "/".join(_CAMEL_BOUNDARY.sub("_", p).lower() for p in parts)


@dataclass
class ProjectLayout:
    """Where a component's artifacts live inside the target repository."""
    templates: dict[str, str] = field(default_factory=lambda: dict(_DEFAULT_TEMPLATES))

    @staticmethod
    def from_config(layout: dict[str, str] | None) -> ProjectLayout:
        return ProjectLayout(templates={**_DEFAULT_TEMPLATES, **(layout or {})})

    def component_files(self, component: Component) -> dict[str, str]:
        path = module_path(component.module_name)
        files = {
            key: self.templates[key].format(module_path=path)
            for key in ("design_file", "code_file", "test_file", "spec_file")
        }
        if component.type == "context":
            files["review_file"] = self.templates["review_file"].format(module_path=path)
        return files
