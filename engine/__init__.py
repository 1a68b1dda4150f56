"""
Session Orchestrator - Engine Package

Ambient infrastructure shared by the orchestration core and its surfaces:

  - engine.logging: JSON log formatting and per-session structured traces
  - engine.config_loader: layered YAML + environment configuration
  - engine.webhooks: outbound notifications on terminal session transitions
"""
