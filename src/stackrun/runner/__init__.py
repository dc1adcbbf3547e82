"""Container run orchestrator — launches a task checkout as a reachable stack.

This package is split into focused submodules:
  _strategy   — compose manifest vs. single-container selection
  _manifest   — rendered-manifest port discovery and sanitization
  _override   — host-port override fragment
  _preview    — preview service heuristic
  _published  — parsing of engine ps/inspect output
  _context    — per-run event helpers, naming, precondition errors
  _compose    — compose lifecycle driver
  _direct     — single-container lifecycle driver
  _mock       — engine-free start event generator
  service     — run registry: start/stop/inspect with per-task dedup
"""

from stackrun.runner._context import RunPreconditionError, project_name
from stackrun.runner._manifest import discover_compose_ports, sanitize_compose_config
from stackrun.runner._mock import generate_mock_start_events
from stackrun.runner._override import build_override_yaml
from stackrun.runner._preview import choose_preview_service
from stackrun.runner._strategy import find_compose_file
from stackrun.runner.service import ContainerRunnerService

__all__ = [
    "ContainerRunnerService",
    "RunPreconditionError",
    "build_override_yaml",
    "choose_preview_service",
    "discover_compose_ports",
    "find_compose_file",
    "generate_mock_start_events",
    "project_name",
    "sanitize_compose_config",
]
