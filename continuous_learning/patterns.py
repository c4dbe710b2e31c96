"""Pattern-key strategies for grouping observations into instincts.

Each observation type that takes part in learning has one strategy. A
strategy turns the JSON form of a payload into:
- a pattern key: observations sharing a key form one group
- a description: the human-readable statement stored on the instinct
- a category: selects the evolution thresholds and template

session_summary observations and types this version doesn't know are
not aggregated and have no strategy.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from continuous_learning.models import Observation, ObservationType
from continuous_learning.utils import normalize_key_part, sanitize_id, short_digest

# Separator between the nodes of a sequence key (workflow nodes)
SEQUENCE_SEPARATOR: str = "->"

# Longest slug kept in an instinct id before the digest
MAX_SLUG_LENGTH: int = 80


@dataclass(frozen=True)
class PatternStrategy:
    """How one observation type maps to a pattern key.

    Attributes:
        obs_type: Observation type this strategy handles.
        category: Category given to instincts of this type.
        key_template: str.format template over the normalized fields.
        description_template: str.format template for the description.
        fields: Payload fields the templates refer to.
        defaults: Values used for optional fields that are absent.
    """

    obs_type: ObservationType
    category: str
    key_template: str
    description_template: str
    fields: tuple[str, ...]
    defaults: dict[str, str] = field(default_factory=dict)

    def parts(self, data: Any) -> dict[str, str]:
        """Normalize the fields of a payload's JSON form.

        Raises:
            ValueError: If data is not an object or a field is missing.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"{self.obs_type.value} data is not an object")

        parts: dict[str, str] = {}
        for name in self.fields:
            value = data.get(name)
            if value is None or value == "" or value == []:
                if name not in self.defaults:
                    raise ValueError(f"{self.obs_type.value} data has no '{name}'")
                value = self.defaults[name]
            if isinstance(value, (list, tuple)):
                parts[name] = SEQUENCE_SEPARATOR.join(normalize_key_part(v) for v in value)
            else:
                parts[name] = normalize_key_part(value)
        return parts

    def key(self, data: Any) -> str:
        return self.key_template.format(**self.parts(data))

    def describe(self, data: Any) -> str:
        return self.description_template.format(**self.parts(data))


STRATEGIES: dict[ObservationType, PatternStrategy] = {
    strategy.obs_type: strategy
    for strategy in (
        PatternStrategy(
            obs_type=ObservationType.TOOL_USE,
            category="workflow",
            key_template="tool_use:{tool}",
            description_template="Uses the {tool} tool",
            fields=("tool",),
        ),
        PatternStrategy(
            obs_type=ObservationType.WORKFLOW_PATTERN,
            category="workflow",
            key_template="workflow:{nodes}",
            description_template="Builds workflows as {nodes}",
            fields=("nodes",),
        ),
        PatternStrategy(
            obs_type=ObservationType.ERROR_OCCURRENCE,
            category="error-handling",
            key_template="error:{error_type}",
            description_template="Runs into {error_type} errors",
            fields=("error_type",),
        ),
        PatternStrategy(
            obs_type=ObservationType.ERROR_FIX,
            category="error-fix",
            key_template="error_fix:{error_type}:{fix_type}",
            description_template="Resolves {error_type} errors with {fix_type}",
            fields=("error_type", "fix_type"),
        ),
        PatternStrategy(
            obs_type=ObservationType.FRAMEWORK_SELECTION,
            category="framework",
            key_template="framework:{project_type}:{framework}",
            description_template="Chooses {framework} for {project_type} projects",
            fields=("project_type", "framework"),
        ),
        PatternStrategy(
            obs_type=ObservationType.NODE_USAGE,
            category="pattern",
            key_template="node:{node_type}",
            description_template="Uses {node_type} nodes",
            fields=("node_type",),
        ),
        PatternStrategy(
            obs_type=ObservationType.CONNECTION_PATTERN,
            category="pattern",
            key_template="connection:{source}->{target}",
            description_template="Connects {source} to {target}",
            fields=("source", "target"),
        ),
        PatternStrategy(
            obs_type=ObservationType.TEST_PATTERN,
            category="testing",
            key_template="test:{test_type}:{framework}",
            description_template="Runs {test_type} tests with {framework}",
            fields=("test_type", "framework"),
            defaults={"framework": "any"},
        ),
        PatternStrategy(
            obs_type=ObservationType.DOMAIN_MODEL,
            category="domain-model",
            key_template="domain_model:{model}:{operation}",
            description_template="Performs {operation} on {model}",
            fields=("model", "operation"),
        ),
    )
}


def get_strategy(obs_type: ObservationType | None) -> PatternStrategy | None:
    """Return the strategy for obs_type, or None if the type isn't aggregated."""
    if obs_type is None:
        return None
    return STRATEGIES.get(obs_type)


def derive_key(observation: Observation) -> str | None:
    """Derive the pattern key an observation groups under.

    The key is computed from the payload's JSON form, so a stored record
    whose payload failed to decode still lands in its group when the key
    fields are present.

    Returns:
        The pattern key, or None if the observation's type isn't aggregated.

    Raises:
        ValueError: If the payload lacks the fields the key is built from.
    """
    strategy = get_strategy(observation.kind)
    if strategy is None:
        return None
    return strategy.key(observation.data.to_dict())


def instinct_id_for(pattern: str) -> str:
    """Build the stable instinct id for a pattern key.

    The slug keeps ids readable; the digest keeps them unique when two
    keys slug to the same text.
    """
    slug = sanitize_id(pattern.replace("/", "-").replace(":", "-"))[:MAX_SLUG_LENGTH].rstrip("-")
    return f"{slug or 'pattern'}-{short_digest(pattern)}"
