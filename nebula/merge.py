"""
Configuration tree merging
"""

import copy
from typing import Any, Mapping


def deep_merge(base: Any, override: Any) -> Any:
    """
    Merge two configuration trees

    Maps are merged key by key; sequences and scalars in the override replace
    the base value. Leaves are copied as whole objects, so wrapped values such
    as sensitive secrets keep their wrapper.

    Args:
        base: Default values
        override: Values taking precedence

    Returns:
        New merged tree; neither input is modified
    """
    if isinstance(base, Mapping) and isinstance(override, Mapping):
        result = {key: copy.deepcopy(value) for key, value in base.items()}
        for key, value in override.items():
            if key in result:
                result[key] = deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result
    return copy.deepcopy(override)
