"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict, List, Mapping, Tuple

# Group 1: variable name, group 2: "-" or "+", group 3: default or alternative value
_PATTERN = re.compile(r'\$\{([^}:]+)(?::(-|\+)([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports ${VAR}, ${VAR:-default}, and ${VAR:+value}. "$$" escapes a literal "$".
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> Tuple[str, List[str]]:
        """
        Interpolates environment variables in the template string using the provided context.
        An unset ${VAR} without modifier resolves to an empty string.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string and the names of unset variables, in order of first use.
        """
        missing: Dict[str, None] = {}

        def replace(match):
            var_name = match.group(1)
            modifier = match.group(2)
            alt_value = match.group(3)

            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is None:
                missing[var_name] = None
                return ''
            return value

        escaped = template.split('$$')
        result = '$'.join(_PATTERN.sub(replace, part) for part in escaped)
        return result, list(missing)
