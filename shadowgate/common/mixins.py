"""
Mixins for common functionality.
"""

from __future__ import annotations

from typing import Any


class Configurable:
    """
    Mixin class for handling configuration overrides.

    Classes using this mixin call apply_overrides to set lowercase attributes
    from an override dict, falling back to the matching UPPERCASE attribute of
    a config object.
    """

    def apply_overrides(
        self,
        overrides: dict[str, Any],
        config_obj: Any,
        attr_list: list[str] | None = None,
    ) -> None:
        """
        Apply overrides to the instance using the config object as defaults.

        Sets self.attr = overrides.get(attr, config_obj.ATTR) for each attr in
        attr_list and writes the resolved value back onto the config so that
        components sharing it see the same setting.

        Args:
            overrides: Dictionary of override values
            config_obj: Configuration object with uppercase attribute names
            attr_list: List of attribute names to set
        """
        if attr_list is None:
            attr_list = []

        unknown = set(overrides) - set(attr_list)
        if unknown:
            msg = f"Unknown configuration override(s): {', '.join(sorted(unknown))}"
            raise TypeError(msg)

        for attr in attr_list:
            config_attr = attr.upper()
            if hasattr(config_obj, config_attr):
                value = overrides.get(attr, getattr(config_obj, config_attr))
                setattr(config_obj, config_attr, value)
                setattr(self, attr, value)
            elif attr in overrides:
                setattr(self, attr, overrides[attr])
