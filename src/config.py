"""Engine and environment configuration.

Configuration is loaded from YAML files in the config directory:
- orchestrator.yaml: Engine-wide defaults (workers, lock timeouts, operators)
- envs/*.yaml: Environment definitions (tier, approval policy, variables)
- modules/{env}/**/module.yaml: Module declarations (see modules.py)

Resolution order for the config directory:
1. $IAC_ORCHESTRATOR_CONFIG environment variable
2. ../infra/ sibling directory (dev workspace)
3. /usr/local/etc/iac-orchestrator/ (installed)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

# Approval policies, from least to most restrictive
APPROVAL_POLICIES = ('none', 'merge', 'approval')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class EngineSettings:
    """Engine-wide settings from orchestrator.yaml.

    Attributes:
        max_workers: Upper bound on modules processed concurrently per run
        lock_timeout: Seconds without heartbeat before a lock is stale
        lock_wait: Seconds a run queues on a busy lock before giving up
        state_dir: Root of the lock table, run log and tofu state
        tofu_binary: OpenTofu executable
        tflint: Run tflint in addition to tofu validate
        operators: Identities allowed to set auto_approve
        review_repo: owner/name of the repository hosting proposals
    """
    max_workers: int = 4
    lock_timeout: int = 3600
    lock_wait: int = 0
    state_dir: Path = field(default_factory=lambda: get_base_dir() / '.states')
    tofu_binary: str = 'tofu'
    tflint: bool = False
    operators: list[str] = field(default_factory=list)
    review_repo: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict], base: Optional[Path] = None) -> 'EngineSettings':
        """Create EngineSettings from the 'defaults' section of orchestrator.yaml."""
        if not data:
            return cls()
        settings = cls(
            max_workers=int(data.get('max_workers', 4)),
            lock_timeout=int(data.get('lock_timeout', 3600)),
            lock_wait=int(data.get('lock_wait', 0)),
            tofu_binary=data.get('tofu_binary', 'tofu'),
            tflint=bool(data.get('tflint', False)),
            operators=list(data.get('operators') or []),
            review_repo=data.get('review_repo', ''),
        )
        if settings.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {settings.max_workers}")
        if state_dir := data.get('state_dir'):
            path = Path(state_dir)
            if not path.is_absolute() and base is not None:
                path = base / path
            settings.state_dir = path
        return settings


@dataclass
class EnvironmentConfig:
    """An isolated deployment target with its own variables and policy.

    Attributes:
        name: Environment name (nonprod, preprod, prod)
        tier: Trust tier, 0 is the lowest (least restrictive)
        approval: Approval policy ('none', 'merge', 'approval')
        required_approvals: Distinct approvals needed under 'approval'
        allow_auto_approve: Whether operators may bypass the gate
        promote_from: Environment a proposal must be applied to first
        variables: Variables passed to every module in the environment
    """
    name: str
    tier: int = 0
    approval: str = 'none'
    required_approvals: int = 1
    allow_auto_approve: bool = False
    promote_from: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'EnvironmentConfig':
        """Create EnvironmentConfig from an envs/{name}.yaml document."""
        data = data or {}
        approval = data.get('approval', 'none')
        if approval not in APPROVAL_POLICIES:
            raise ConfigError(
                f"Environment '{name}' has unknown approval policy '{approval}'. "
                f"Expected one of: {', '.join(APPROVAL_POLICIES)}"
            )
        variables = data.get('variables') or {}
        if not isinstance(variables, dict):
            raise ConfigError(f"Environment '{name}' variables must be a mapping")
        return cls(
            name=name,
            tier=int(data.get('tier', 0)),
            approval=approval,
            required_approvals=int(data.get('required_approvals', 1)),
            allow_auto_approve=bool(data.get('allow_auto_approve', False)),
            promote_from=data.get('promote_from'),
            variables=variables,
        )


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the iac-orchestrator directory."""
    return Path(__file__).parent.parent  # src/ -> iac-orchestrator/


def get_config_dir() -> Path:
    """Discover the configuration directory.

    Resolution order:
    1. $IAC_ORCHESTRATOR_CONFIG environment variable
    2. ../infra/ sibling directory (dev workspace)
    3. /usr/local/etc/iac-orchestrator/
    """
    if env_path := os.environ.get('IAC_ORCHESTRATOR_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"IAC_ORCHESTRATOR_CONFIG={env_path} does not exist")

    sibling = get_base_dir().parent / 'infra'
    if sibling.exists():
        return sibling

    installed = Path('/usr/local/etc/iac-orchestrator')
    if installed.exists():
        return installed

    raise ConfigError(
        "Configuration directory not found. "
        "Set IAC_ORCHESTRATOR_CONFIG or clone infra as sibling directory."
    )


def load_settings(config_dir: Optional[Path] = None) -> EngineSettings:
    """Load engine settings from orchestrator.yaml (defaults when absent)."""
    config_dir = config_dir or get_config_dir()
    path = config_dir / 'orchestrator.yaml'
    if not path.exists():
        return EngineSettings()
    return EngineSettings.from_dict(_parse_yaml(path).get('defaults'), base=config_dir)


def list_environments(config_dir: Optional[Path] = None) -> list[str]:
    """List environment names defined under envs/."""
    try:
        config_dir = config_dir or get_config_dir()
    except ConfigError:
        return []
    envs_dir = config_dir / 'envs'
    if not envs_dir.exists():
        return []
    return sorted(f.stem for f in envs_dir.glob('*.yaml') if f.is_file())


def load_environment(name: str, config_dir: Optional[Path] = None) -> EnvironmentConfig:
    """Load configuration for a named environment.

    Raises:
        ConfigError: If the environment is not defined or invalid
    """
    config_dir = config_dir or get_config_dir()
    path = config_dir / 'envs' / f'{name}.yaml'
    if not path.exists():
        available = list_environments(config_dir)
        raise ConfigError(
            f"Environment '{name}' not found at {path}. "
            f"Available: {', '.join(available) if available else 'none'}"
        )
    env = EnvironmentConfig.from_dict(name, _parse_yaml(path))
    if env.promote_from == name:
        raise ConfigError(f"Environment '{name}' cannot promote from itself")
    return env
