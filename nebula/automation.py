"""
Automation backend
Drives Pulumi stacks for execution units through the Automation API
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from pulumi import automation as auto

from .config import Config
from .errors import BackendOperationError, ConfigurationError
from .secrets import REDACTED, Sensitive

logger = logging.getLogger(__name__)

OPERATIONS = ("preview", "apply", "destroy", "refresh")
READ_ONLY_OPERATIONS = ("preview", "refresh")

CONFIG_NAMESPACE = "nebula"


@dataclass
class UnitRequest:
    """Everything the backend needs to run one execution unit"""

    name: str
    module: str
    program: Callable[[], None]
    config: Any = None
    child: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)


@dataclass
class OperationResult:
    unit: str
    operation: str
    summary: Dict[str, int] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    stdout: str = ""


class AutomationBackend(Protocol):
    """Anything able to run an operation on an execution unit"""

    def execute(self, unit: UnitRequest, operation: str) -> OperationResult:
        ...

    def cancel(self, unit_name: str) -> None:
        ...


def _path_segment(key: Any) -> str:
    if isinstance(key, int):
        return f"[{key}]"
    key = str(key)
    if "." in key or "[" in key or "]" in key:
        return f'["{key}"]'
    return f".{key}"


def _scalar(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def flatten_config(tree: Any, namespace: str = CONFIG_NAMESPACE) -> Dict[str, auto.ConfigValue]:
    """
    Flatten a resolved configuration tree into path-style stack config

    Args:
        tree: Resolved configuration (sensitive leaves wrapped)
        namespace: Config namespace the keys live under

    Returns:
        Dict of "namespace:path" -> ConfigValue, with sensitive leaves marked secret
    """
    flat: Dict[str, auto.ConfigValue] = {}

    def walk(node: Any, path: str) -> None:
        if isinstance(node, Sensitive):
            flat[f"{namespace}:{path}"] = auto.ConfigValue(value=_scalar(node.value), secret=True)
        elif isinstance(node, dict) and node:
            for key, value in node.items():
                walk(value, path + _path_segment(key))
        elif isinstance(node, (list, tuple)) and node:
            for index, value in enumerate(node):
                walk(value, path + _path_segment(index))
        elif node is not None:
            flat[f"{namespace}:{path}"] = auto.ConfigValue(value=_scalar(node))

    if isinstance(tree, dict):
        for key, value in tree.items():
            segment = _path_segment(key)
            walk(value, segment[1:] if segment.startswith(".") else segment)
    elif tree is not None:
        raise ConfigurationError("Module configuration must be a mapping")
    return flat


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])


class PulumiBackend:
    """
    Runs execution units as Pulumi stacks with inline programs

    One stack per unit, named after the unit, inside the configured project.
    """

    def __init__(self, config: Config):
        self.config = config
        self._stacks: Dict[str, auto.Stack] = {}
        self._lock = threading.Lock()

    def workspace_options(self) -> auto.LocalWorkspaceOptions:
        backend = auto.ProjectBackend(url=self.config.backend_url) if self.config.backend_url else None
        return auto.LocalWorkspaceOptions(
            env_vars=self.config.passthrough_env,
            secrets_provider=self.config.secrets_provider,
            project_settings=auto.ProjectSettings(
                name=self.config.project,
                runtime="python",
                backend=backend,
            ),
        )

    def select(self, unit: UnitRequest) -> auto.Stack:
        """Create or select the unit's stack and push its configuration"""
        stack = auto.create_or_select_stack(
            stack_name=unit.name,
            project_name=self.config.project,
            program=unit.program,
            opts=self.workspace_options(),
        )

        values = flatten_config(unit.config)
        values[f"{CONFIG_NAMESPACE}:environment"] = auto.ConfigValue(value=self.config.environment)
        values[f"{CONFIG_NAMESPACE}:dependsOn"] = auto.ConfigValue(value=json.dumps(unit.depends_on))
        if self.config.aws_region:
            values["aws:region"] = auto.ConfigValue(value=self.config.aws_region)
        stack.set_all_config(values, path=True)

        with self._lock:
            self._stacks[unit.name] = stack
        return stack

    def execute(self, unit: UnitRequest, operation: str) -> OperationResult:
        """
        Run an operation on a unit

        Raises:
            BackendOperationError: If the Pulumi CLI reports a failure
        """
        if operation not in OPERATIONS:
            raise ConfigurationError(f"Unknown operation '{operation}'")

        def on_output(line: str) -> None:
            if self.config.debug:
                logger.debug(f"[{unit.name}] {line.rstrip()}")

        try:
            stack = self.select(unit)
            if operation == "preview":
                preview = stack.preview(on_output=on_output)
                return OperationResult(unit.name, operation, summary=dict(preview.change_summary or {}),
                                       stdout=preview.stdout)
            if operation == "apply":
                result = stack.up(on_output=on_output)
                outputs = {
                    key: REDACTED if value.secret else value.value
                    for key, value in (result.outputs or {}).items()
                }
                return OperationResult(unit.name, operation, summary=self._changes(result.summary),
                                       outputs=outputs, stdout=result.stdout)
            if operation == "destroy":
                result = stack.destroy(on_output=on_output)
            else:
                result = stack.refresh(on_output=on_output)
            return OperationResult(unit.name, operation, summary=self._changes(result.summary),
                                   stdout=result.stdout)
        except auto.CommandError as exc:
            raise BackendOperationError(unit.name, operation, _tail(str(exc), 5), output=str(exc)) from exc
        finally:
            with self._lock:
                self._stacks.pop(unit.name, None)

    @staticmethod
    def _changes(summary) -> Dict[str, int]:
        if summary is None or not summary.resource_changes:
            return {}
        return dict(summary.resource_changes)

    def cancel(self, unit_name: str) -> None:
        """Ask the CLI to stop the unit's in-flight update; no-op when idle"""
        with self._lock:
            stack = self._stacks.get(unit_name)
        if stack is None:
            return
        try:
            stack.cancel()
        except auto.CommandError as exc:
            logger.warning(f"[Backend] Failed to cancel '{unit_name}': {_tail(str(exc), 3)}")
