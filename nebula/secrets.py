"""
Secret reference resolution

Walks a configuration tree, resolves every ``ref+<scheme>://<locator>`` string
exactly once per run through an external resolver, and tags resolved leaves as
sensitive so rendering and logging can redact them.

Supported schemes depend on the resolver; the default routing sends
``ref+env://`` to the process environment and everything else to the ``vals``
command (sops, awsssm, vault, gcpsecrets, ...).
"""

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import pulumi

from .cache import OnceCache
from .errors import SecretResolutionError

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"^ref\+(?P<scheme>[a-z0-9][a-z0-9+.-]*)://(?P<locator>.+)$", re.DOTALL)

REDACTED = "[secret]"

Path = Tuple[Any, ...]
Resolver = Callable[[str], str]


@dataclass(frozen=True)
class Sensitive:
    """A resolved secret value; the wrapper is the sensitivity tag"""

    value: Any

    def __repr__(self) -> str:
        return f"Sensitive({REDACTED})"

    __str__ = __repr__


def is_reference(value: Any) -> bool:
    return isinstance(value, str) and REFERENCE_PATTERN.match(value) is not None


def parse_reference(reference: str) -> Tuple[str, str]:
    """Split a reference into (scheme, locator)"""
    match = REFERENCE_PATTERN.match(reference)
    if not match:
        raise ValueError(f"Not a secret reference: {reference!r}")
    return match.group("scheme"), match.group("locator")


def find_repo_root(start: Optional[str] = None) -> Optional[str]:
    """Walk up from start (default: cwd) to the directory holding .git"""
    directory = os.path.abspath(start or os.getcwd())
    while True:
        if os.path.exists(os.path.join(directory, ".git")):
            return directory
        parent = os.path.dirname(directory)
        if parent == directory:
            return None
        directory = parent


class EnvResolver:
    """Resolves ref+env://NAME from the process environment"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    def __call__(self, reference: str) -> str:
        _, name = parse_reference(reference)
        value = self.environ.get(name)
        if value is None:
            raise SecretResolutionError(reference, f"environment variable {name} is not set")
        return value


class ValsResolver:
    """
    Resolves references with the vals command.

    ``ref+sops://`` locators that do not start with '/', './' or '../' are
    taken as relative to the git repository root so resolution behaves the
    same from the repo root and from a module directory.
    """

    def __init__(self, command: str = "vals", repo_root: Optional[str] = None, timeout: float = 60):
        self.command = command
        self.repo_root = repo_root
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.command) is not None

    def normalize(self, reference: str) -> str:
        scheme, locator = parse_reference(reference)
        if scheme != "sops":
            return reference
        path, sep, selector = locator.partition("#")
        if path.startswith(("/", "./", "../")):
            return reference
        root = self.repo_root or find_repo_root()
        if not root:
            logger.warning(f"[Secrets] Cannot find git repository root; '{path}' resolves from cwd")
            return reference
        return f"ref+sops://{os.path.join(root, path)}{sep}{selector}"

    def __call__(self, reference: str) -> str:
        normalized = self.normalize(reference)
        try:
            result = subprocess.run(
                [self.command, "get", normalized],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError:
            raise SecretResolutionError(reference, f"'{self.command}' command not found")
        except subprocess.TimeoutExpired:
            raise SecretResolutionError(reference, f"'{self.command}' timed out after {self.timeout}s")

        if result.returncode != 0:
            detail = (result.stderr or "").strip() or (result.stdout or "").strip() or "vals evaluation failed"
            raise SecretResolutionError(reference, detail)

        value = (result.stdout or "").strip()
        if not value or value in (reference, normalized, "null"):
            raise SecretResolutionError(reference, "resolved value is empty or unchanged")
        return value


class SchemeRouter:
    """Dispatches a reference to a resolver by its scheme"""

    def __init__(self, resolvers: Optional[Dict[str, Resolver]] = None, default: Optional[Resolver] = None):
        self.resolvers = dict(resolvers or {})
        self.default = default

    def __call__(self, reference: str) -> str:
        scheme, _ = parse_reference(reference)
        resolver = self.resolvers.get(scheme, self.default)
        if resolver is None:
            raise SecretResolutionError(reference, f"no resolver registered for scheme '{scheme}'")
        return resolver(reference)


def default_resolver() -> SchemeRouter:
    return SchemeRouter({"env": EnvResolver()}, default=ValsResolver())


class SecretCache(OnceCache[str]):
    """Process-lifetime map from reference string to resolved value"""


_default_cache = SecretCache()


def default_cache() -> SecretCache:
    return _default_cache


class SecretPipeline:
    """
    Resolves every reference in a configuration tree

    Args:
        resolver: Callable taking the full reference string and returning its value
        cache: Reference cache shared by every module of the run
        strict: Raise on failures; when False the raw reference is kept (development only)
        debug: Log each resolution (never the value)
    """

    def __init__(self, resolver: Optional[Resolver] = None, cache: Optional[SecretCache] = None,
                 strict: bool = True, debug: bool = False):
        self.resolver = resolver or default_resolver()
        self.cache = cache if cache is not None else default_cache()
        self.strict = strict
        self.debug = debug

    def resolve_reference(self, reference: str) -> str:
        def create() -> str:
            if self.debug:
                logger.debug(f"[Secrets] Resolving {reference}")
            return self.resolver(reference)

        try:
            return self.cache.get_or_create(reference, create)
        except SecretResolutionError:
            raise
        except Exception as exc:
            raise SecretResolutionError(reference, str(exc)) from exc

    def resolve(self, tree: Any, module: Optional[str] = None) -> Tuple[Any, List[Path]]:
        """
        Resolve references in a tree

        Args:
            tree: Nested maps/sequences/scalars
            module: Module name attached to errors

        Returns:
            Tuple of (resolved tree, paths of sensitive leaves)

        Raises:
            SecretResolutionError: If a reference cannot be resolved in strict mode
        """
        paths: List[Path] = []
        try:
            resolved = self._walk(tree, (), paths)
        except SecretResolutionError as exc:
            if module and exc.module is None:
                raise exc.with_module(module) from exc
            raise
        return resolved, paths

    def _walk(self, node: Any, path: Path, paths: List[Path]) -> Any:
        if isinstance(node, Sensitive):
            paths.append(path)
            return node
        if isinstance(node, str):
            if not is_reference(node):
                return node
            try:
                value = self.resolve_reference(node)
            except SecretResolutionError as exc:
                if self.strict:
                    raise
                logger.warning(f"[Secrets] {exc}; keeping unresolved reference")
                return node
            paths.append(path)
            return Sensitive(value)
        if isinstance(node, Mapping):
            return {key: self._walk(value, path + (key,), paths) for key, value in node.items()}
        if isinstance(node, (list, tuple)):
            return [self._walk(value, path + (index,), paths) for index, value in enumerate(node)]
        return node


def _transform(node: Any, leaf: Callable[[Sensitive], Any]) -> Any:
    if isinstance(node, Sensitive):
        return leaf(node)
    if isinstance(node, Mapping):
        return {key: _transform(value, leaf) for key, value in node.items()}
    if isinstance(node, (list, tuple)):
        return [_transform(value, leaf) for value in node]
    return node


def unwrap(tree: Any) -> Any:
    """Plain values with the sensitivity tags removed"""
    return _transform(tree, lambda s: s.value)


def redact(tree: Any) -> Any:
    """Tree safe to log"""
    return _transform(tree, lambda s: REDACTED)


def as_outputs(tree: Any) -> Any:
    """Sensitive leaves become secret Pulumi outputs; for use inside a program"""
    return _transform(tree, lambda s: pulumi.Output.secret(s.value))


def sensitive_paths(tree: Any, path: Path = ()) -> List[Path]:
    if isinstance(tree, Sensitive):
        return [path]
    found: List[Path] = []
    if isinstance(tree, Mapping):
        for key, value in tree.items():
            found.extend(sensitive_paths(value, path + (key,)))
    elif isinstance(tree, (list, tuple)):
        for index, value in enumerate(tree):
            found.extend(sensitive_paths(value, path + (index,)))
    return found


def has_unresolved_refs(tree: Any) -> bool:
    if isinstance(tree, str):
        return is_reference(tree)
    if isinstance(tree, Mapping):
        return any(has_unresolved_refs(v) for v in tree.values())
    if isinstance(tree, (list, tuple)):
        return any(has_unresolved_refs(v) for v in tree)
    return False
