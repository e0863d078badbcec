"""Module discovery, dependency resolution and fingerprints.

Modules are deployable units of infrastructure declared per environment:

    modules/{env}/{path}/module.yaml

    source: ../../../tofu/database     # OpenTofu root module (relative)
    depends_on: [network]              # explicit dependencies
    inputs:
      subnet_id: ${network.subnet_id}  # implicit dependency on 'network'
      region: ${var.region}            # environment variable

The module id is {path} relative to modules/{env}/ (e.g. 'network',
'data/database'). Dependencies never cross environments.
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from config import ConfigError, _parse_yaml, get_config_dir
from orchestrator.errors import CycleDetected, UnknownDependency

logger = logging.getLogger(__name__)

MODULE_FILE = 'module.yaml'

# ${module-id.output}; 'var' is reserved for environment variables
REFERENCE_PATTERN = re.compile(r'\$\{([A-Za-z0-9_\-/]+)\.([A-Za-z0-9_\-]+)\}')
VARIABLE_PREFIX = 'var'

# Source files that contribute to the fingerprint
SOURCE_SUFFIXES = ('.tf', '.tf.json', '.tfvars')


@dataclass
class ModuleSpec:
    """A module declaration for one environment.

    Attributes:
        id: Path-like identifier, unique within the environment
        environment: Owning environment name
        source: OpenTofu root module directory (relative to module.yaml)
        depends_on: Explicit dependencies (module ids)
        inputs: Input variables, may contain ${module.output} references
        source_path: module.yaml the spec was loaded from
    """
    id: str
    environment: str
    source: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    inputs: dict[str, Any] = field(default_factory=dict)
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, module_id: str, environment: str, data: dict,
                  source_path: Optional[Path] = None) -> 'ModuleSpec':
        """Create ModuleSpec from a module.yaml document.

        Raises:
            ConfigError: If fields have the wrong shape
        """
        depends_on = data.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ConfigError(f"Module '{module_id}': depends_on must be a list of module ids")

        inputs = data.get('inputs') or {}
        if not isinstance(inputs, dict):
            raise ConfigError(f"Module '{module_id}': inputs must be a mapping")

        return cls(
            id=module_id,
            environment=environment,
            source=data.get('source'),
            depends_on=[d.strip('/') for d in depends_on],
            inputs=inputs,
            source_path=source_path,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {'id': self.id, 'environment': self.environment}
        if self.source is not None:
            d['source'] = self.source
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.inputs:
            d['inputs'] = self.inputs
        return d

    @property
    def source_dir(self) -> Optional[Path]:
        """Resolved OpenTofu source directory, if declared."""
        if self.source is None:
            return None
        path = Path(self.source)
        if not path.is_absolute() and self.source_path is not None:
            path = self.source_path.parent / path
        return path.resolve()

    def references(self) -> set[str]:
        """Module ids referenced implicitly through ${module.output} inputs."""
        return {ref for ref, _ in _find_references(self.inputs) if ref != VARIABLE_PREFIX}


def _find_references(value: Any) -> list[tuple[str, str]]:
    """Collect (module, output) references from nested input values."""
    found: list[tuple[str, str]] = []
    if isinstance(value, str):
        found.extend(REFERENCE_PATTERN.findall(value))
    elif isinstance(value, dict):
        for v in value.values():
            found.extend(_find_references(v))
    elif isinstance(value, (list, tuple)):
        for v in value:
            found.extend(_find_references(v))
    return found


def resolve_dependencies(specs: list[ModuleSpec]) -> dict[str, set[str]]:
    """Resolve explicit and implicit dependencies into an edge set.

    Pure function: computed once per run from the raw descriptors.

    Returns:
        Mapping of module id -> ids it depends on

    Raises:
        CycleDetected: If a module depends on itself
        UnknownDependency: If a dependency names a module that does not exist
            in the same environment
    """
    by_id = {s.id: s for s in specs}
    edges: dict[str, set[str]] = {}
    for spec in specs:
        deps = set(spec.depends_on) | spec.references()
        for dep in sorted(deps):
            if dep == spec.id:
                raise CycleDetected([spec.id, spec.id])
            other = by_id.get(dep)
            if other is None or other.environment != spec.environment:
                raise UnknownDependency(spec.id, dep, spec.environment)
        edges[spec.id] = deps
    return edges


def fingerprint(spec: ModuleSpec, variables: Optional[dict] = None) -> str:
    """Content fingerprint of a module's declared configuration.

    Covers the declaration, the environment variables and the OpenTofu
    source files. Stable for identical inputs.
    """
    digest = hashlib.sha256()
    declared = {
        'id': spec.id,
        'environment': spec.environment,
        'source': spec.source,
        'depends_on': sorted(spec.depends_on),
        'inputs': spec.inputs,
        'variables': variables or {},
    }
    digest.update(json.dumps(declared, sort_keys=True, default=str).encode('utf-8'))

    source_dir = spec.source_dir
    if source_dir is not None and source_dir.is_dir():
        for path in sorted(source_dir.iterdir()):
            if path.is_file() and path.name.endswith(SOURCE_SUFFIXES):
                digest.update(path.name.encode('utf-8'))
                digest.update(hashlib.sha256(path.read_bytes()).digest())
    return digest.hexdigest()


def interpolate_inputs(inputs: Any, outputs: dict[str, dict], variables: Optional[dict] = None) -> Any:
    """Substitute ${module.output} and ${var.name} references.

    A value that is exactly one reference takes the referenced value as-is
    (keeping its type); references embedded in longer strings are rendered
    as text. Unknown outputs resolve to None (whole value) or stay verbatim.
    """
    variables = variables or {}

    def lookup(module_id: str, name: str) -> Any:
        if module_id == VARIABLE_PREFIX:
            return variables.get(name)
        return (outputs.get(module_id) or {}).get(name)

    if isinstance(inputs, str):
        whole = REFERENCE_PATTERN.fullmatch(inputs)
        if whole:
            return lookup(whole.group(1), whole.group(2))

        def _render(match: re.Match) -> str:
            value = lookup(match.group(1), match.group(2))
            return match.group(0) if value is None else str(value)

        return REFERENCE_PATTERN.sub(_render, inputs)
    if isinstance(inputs, dict):
        return {k: interpolate_inputs(v, outputs, variables) for k, v in inputs.items()}
    if isinstance(inputs, list):
        return [interpolate_inputs(v, outputs, variables) for v in inputs]
    return inputs


class ModuleLoader:
    """Discovers module declarations from modules/{env}/ directory trees."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize loader.

        Args:
            config_dir: Configuration directory. If None, uses auto-discovery.
        """
        self.config_dir = Path(config_dir) if config_dir else get_config_dir()
        self.modules_dir = self.config_dir / 'modules'

    def list_environments(self) -> list[str]:
        """Environments that declare at least one module directory."""
        if not self.modules_dir.exists():
            return []
        return sorted(d.name for d in self.modules_dir.iterdir() if d.is_dir())

    def discover(self, environment: str) -> list[ModuleSpec]:
        """Load every module declared for an environment, sorted by id.

        Raises:
            ConfigError: If the environment has no module tree or a
                declaration is invalid
        """
        env_dir = self.modules_dir / environment
        if not env_dir.is_dir():
            available = self.list_environments()
            raise ConfigError(
                f"No modules for environment '{environment}' at {env_dir}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )

        specs: list[ModuleSpec] = []
        for path in sorted(env_dir.rglob(MODULE_FILE)):
            module_id = path.parent.relative_to(env_dir).as_posix()
            if module_id == '.':
                raise ConfigError(f"{path}: module.yaml must live in a module directory")
            specs.append(ModuleSpec.from_dict(module_id, environment, _parse_yaml(path), source_path=path))

        logger.debug(f"Discovered {len(specs)} modules for '{environment}' in {env_dir}")
        return specs
