"""
Error taxonomy for module resolution and stack orchestration
"""

from typing import List, Optional, Sequence, Tuple


class NebulaError(Exception):
    """Base class for every error raised by the engine"""


class ConfigurationError(NebulaError):
    """Invalid module or environment declaration"""


class CyclicDependencyError(NebulaError):
    """Capability requirements form a cycle; raised before any module executes"""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic module dependency: {' -> '.join(self.cycle)}")


class SecretResolutionError(NebulaError):
    """A secret reference could not be resolved"""

    def __init__(self, reference: str, detail: str, module: Optional[str] = None):
        self.reference = reference
        self.detail = detail
        self.module = module
        where = f" for module '{module}'" if module else ""
        super().__init__(f"Failed to resolve '{reference}'{where}: {detail}")

    def with_module(self, module: str) -> "SecretResolutionError":
        return SecretResolutionError(self.reference, self.detail, module=module)


class MissingProviderConfigError(NebulaError):
    """A provider handle needs configuration that was not supplied"""

    def __init__(self, token: str, field: str, hint: str = ""):
        self.token = token
        self.field = field
        message = f"Provider '{token}' requires '{field}' but it is not configured"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class BackendOperationError(NebulaError):
    """The automation backend failed an operation on an execution unit"""

    def __init__(self, unit: str, operation: str, detail: str, output: str = ""):
        self.unit = unit
        self.operation = operation
        self.detail = detail
        self.output = output
        super().__init__(f"{operation} failed for '{unit}': {detail}")


class BackendTimeoutError(NebulaError):
    """A backend operation exceeded its timeout"""

    def __init__(self, unit: str, operation: str, timeout: float):
        self.unit = unit
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} for '{unit}' timed out after {timeout:g}s")


class ExpansionFailedError(BackendOperationError):
    """One or more child units failed a read-only operation"""

    def __init__(self, operation: str, failures: List[Tuple[str, Exception]]):
        self.failures = failures
        units = ", ".join(unit for unit, _ in failures)
        first = failures[0][1]
        super().__init__(units, operation, f"{len(failures)} unit(s) failed, first: {first}")


class RunCancelledError(NebulaError):
    """The run was cancelled before the next module started"""

    def __init__(self, next_module: Optional[str] = None):
        self.next_module = next_module
        suffix = f" before '{next_module}'" if next_module else ""
        super().__init__(f"Run cancelled{suffix}")


class RunFailedError(NebulaError):
    """Summary error for a keep-going run that finished with failures"""

    def __init__(self, failed: List[str], skipped: List[str]):
        self.failed = failed
        self.skipped = skipped
        message = f"Modules failed: {', '.join(failed)}"
        if skipped:
            message += f"; skipped: {', '.join(skipped)}"
        super().__init__(message)
