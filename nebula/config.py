"""
Configuration management for the Nebula orchestrator
The orchestrator runs outside any Pulumi program, so settings come from the environment
"""

import os
from typing import Dict, Mapping, Optional

PASSTHROUGH_PREFIXES = ("AWS_", "SOPS_", "VAULT_", "GOOGLE_", "PULUMI_", "KUBECONFIG")

DEFAULT_TIMEOUTS = {
    "preview": 600,
    "refresh": 600,
    "apply": 3600,
    "destroy": 3600,
}


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Centralized configuration for an environment run"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = dict(os.environ if environ is None else environ)
        env = self.environ

        # Project / environment
        self.project = env.get("NEBULA_PROJECT") or "nebula"
        self.environment = env.get("NEBULA_ENV") or "dev"

        # Backend
        self.backend_url = env.get("PULUMI_BACKEND_URL") or None
        self.secrets_provider = env.get("NEBULA_SECRETS_PROVIDER") or None

        # Rendering
        self.render_mode = _flag(env.get("NEBULA_RENDER_MODE"))
        self.render_dir = env.get("NEBULA_RENDER_DIR") or "./manifests"

        # Logging
        self.debug = (env.get("PULUMI_LOG_LEVEL") or "").lower() in ("debug", "trace")

        # Cluster access
        self.kubeconfig = env.get("NEBULA_KUBECONFIG") or env.get("KUBECONFIG") or None
        self.infra_stack = env.get("NEBULA_INFRA_STACK") or None

        # Cloud account
        self.aws_region = env.get("NEBULA_AWS_REGION") or env.get("AWS_REGION") or None
        self.aws_account_id = env.get("NEBULA_AWS_ACCOUNT_ID") or None
        self.aws_profile = env.get("AWS_PROFILE") or None

        # Execution
        self.workers = int(env.get("NEBULA_WORKERS") or 4)
        self.timeouts = {
            op: float(env.get(f"NEBULA_TIMEOUT_{op.upper()}") or default)
            for op, default in DEFAULT_TIMEOUTS.items()
        }

        # Policies
        self.secrets_strict = _flag(env.get("NEBULA_SECRETS_STRICT"), default=True)
        self.strict_requires = _flag(env.get("NEBULA_STRICT_REQUIRES"))

    @property
    def common_tags(self) -> Dict[str, str]:
        """Get common tags for all resources"""
        return {
            "Project": self.project,
            "Environment": self.environment,
            "ManagedBy": "pulumi",
        }

    @property
    def passthrough_env(self) -> Dict[str, str]:
        """Resolver and backend credentials forwarded verbatim to the workspace"""
        return {
            key: value for key, value in self.environ.items()
            if key.startswith(PASSTHROUGH_PREFIXES)
        }

    def timeout_for(self, operation: str) -> float:
        return self.timeouts.get(operation, DEFAULT_TIMEOUTS["preview"])


def get_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Get a configuration instance for the current environment"""
    return Config(environ)
