"""
Anomaly function registry and factory.
"""

from ..errors import ValidationError
from ..models import AnomalyFunctionSpec
from .base import AnomalyFunction
from .stl_zscore import STLZScoreFunction
from .user_rule import UserRuleFunction

# Registry of available functions, keyed by the function type tag
FUNCTION_REGISTRY = {
    "stl_zscore": STLZScoreFunction,
    "user_rule": UserRuleFunction,
}


def from_spec(spec: AnomalyFunctionSpec) -> AnomalyFunction:
    """Factory to create the anomaly function bound to ``spec``

    Args:
        spec: Stored function spec; ``spec.type`` selects the implementation

    Returns:
        A new function instance

    Raises:
        ValidationError: If the type is not registered or the properties are invalid
    """
    function_type = (spec.type or "").lower()
    if function_type not in FUNCTION_REGISTRY:
        available = ", ".join(FUNCTION_REGISTRY.keys())
        raise ValidationError(f"Unknown function type '{spec.type}'. Available types: {available}")

    function_class = FUNCTION_REGISTRY[function_type]
    return function_class(spec)


def list_functions() -> list[str]:
    """List all registered function types"""
    return list(FUNCTION_REGISTRY.keys())


__all__ = [
    "AnomalyFunction",
    "FUNCTION_REGISTRY",
    "STLZScoreFunction",
    "UserRuleFunction",
    "from_spec",
    "list_functions",
]
