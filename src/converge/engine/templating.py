"""
Converge Templating Engine

Jinja2-based templating with a minimal Ansible-style filter set. Rendering is
pure: the same template and variables always give the same value, and nothing
is remembered between calls.
"""

import base64
import json
import logging
import os
import re
from typing import Any, Callable, Dict, Mapping, Optional, Set

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError, meta
from jinja2.runtime import Undefined

from converge.engine.errors import TemplateError

logger = logging.getLogger(__name__)

DEFAULT_VARIABLE_START = '{{'
DEFAULT_VARIABLE_END = '}}'


def _filter_default(value: Any, default: Any = '', boolean: bool = False) -> Any:
    """Return default if value is undefined (or falsy with boolean=True)."""
    if isinstance(value, Undefined):
        return default
    if boolean and not value:
        return default
    return value


def _filter_mandatory(value: Any, msg: Optional[str] = None) -> Any:
    if isinstance(value, Undefined):
        raise UndefinedError(msg or "Mandatory variable not defined")
    return value


def _filter_bool(value: Any) -> bool:
    """Convert value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', 'yes', '1', 'on')
    return bool(value)


def _filter_to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, default_flow_style=False)


def _filter_from_yaml(value: str) -> Any:
    return yaml.safe_load(value)


def _filter_regex_replace(value: str, pattern: str, replacement: str = '') -> str:
    return re.sub(pattern, replacement, str(value))


def _filter_b64decode(value: str) -> str:
    return base64.b64decode(value).decode('utf-8')


def _filter_b64encode(value: Any) -> str:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(str(value).encode('utf-8')).decode('utf-8')


# Export custom filters as a dictionary for reuse
CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'default': _filter_default,
    'd': _filter_default,
    'mandatory': _filter_mandatory,
    'lower': lambda x: str(x).lower(),
    'upper': lambda x: str(x).upper(),
    'replace': lambda s, old, new: str(s).replace(old, new),
    'to_json': lambda x: json.dumps(x),
    'from_json': lambda x: json.loads(x),
    'to_yaml': _filter_to_yaml,
    'from_yaml': _filter_from_yaml,
    'bool': _filter_bool,
    'int': lambda x: int(x),
    'string': lambda x: str(x),
    'trim': lambda x: str(x).strip(),
    'length': lambda x: len(x),
    'join': lambda x, sep=',': sep.join(str(i) for i in x),
    'first': lambda x: x[0] if x else None,
    'last': lambda x: x[-1] if x else None,
    'basename': lambda p: os.path.basename(str(p)),
    'dirname': lambda p: os.path.dirname(str(p)),
    'regex_replace': _filter_regex_replace,
    'b64decode': _filter_b64decode,
    'b64encode': _filter_b64encode,
}


def _result_flag(name: str) -> Callable[[Any], bool]:
    def test(value: Any) -> bool:
        return isinstance(value, Mapping) and bool(value.get(name, False))
    return test


def _test_succeeded(value: Any) -> bool:
    return isinstance(value, Mapping) and not value.get('failed', False)


CUSTOM_TESTS: Dict[str, Callable[..., bool]] = {
    'changed': _result_flag('changed'),
    'failed': _result_flag('failed'),
    'skipped': _result_flag('skipped'),
    'succeeded': _test_succeeded,
    'success': _test_succeeded,
    'string': lambda x: isinstance(x, str),
    'number': lambda x: isinstance(x, (int, float)) and not isinstance(x, bool),
    'mapping': lambda x: isinstance(x, Mapping),
    'sequence': lambda x: isinstance(x, (list, tuple)),
}


class TemplateEngine:
    """
    Jinja2 templating engine with Ansible-like behavior.

    Provides:
    - Variable interpolation in strings (``{{ var }}`` by default; the
      delimiters are configurable, e.g. ``${ var }``)
    - Native values for strings that are a single expression
    - Recursive template rendering in dicts/lists
    - 'when' condition evaluation
    """

    def __init__(
        self,
        variable_start: str = DEFAULT_VARIABLE_START,
        variable_end: str = DEFAULT_VARIABLE_END,
    ):
        self.variable_start = variable_start
        self.variable_end = variable_end
        self.env = Environment(
            undefined=StrictUndefined,
            variable_start_string=variable_start,
            variable_end_string=variable_end,
            block_start_string='{%',
            block_end_string='%}',
            comment_start_string='{#',
            comment_end_string='#}',
            # Not rendering HTML
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env.filters.update(CUSTOM_FILTERS)
        self.env.tests.update(CUSTOM_TESTS)

        self._single_expression = re.compile(
            r'^\s*' + re.escape(variable_start) + r'(?P<expr>.*?)' + re.escape(variable_end) + r'\s*$',
            re.DOTALL,
        )

    def is_template(self, value: Any) -> bool:
        return isinstance(value, str) and (self.variable_start in value or '{%' in value)

    def referenced_names(self, value: Any) -> Set[str]:
        """Top-level variable names a template or bare expression reads."""
        if not isinstance(value, str):
            return set()
        source = value if self.is_template(value) else f"{self.variable_start} {value} {self.variable_end}"
        try:
            return set(meta.find_undeclared_variables(self.env.parse(source)))
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=value)

    def render(self, template_str: Any, variables: Mapping[str, Any]) -> Any:
        """
        Render a template string with variables.

        A string that is exactly one expression (``"{{ items }}"``) renders to
        the expression's native value; anything else renders to a string.

        Raises:
            TemplateError: If template is invalid or a variable is undefined
        """
        if not isinstance(template_str, str):
            return template_str

        # Fast path: no template markers
        if not self.is_template(template_str):
            return template_str

        match = self._single_expression.match(template_str)
        if match and self.variable_start not in match.group('expr'):
            return self.evaluate(match.group('expr'), variables, template=template_str)

        try:
            template = self.env.from_string(template_str)
            return template.render(dict(variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}", template=template_str)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=template_str)
        except TemplateError:
            raise
        except Exception as e:
            raise TemplateError(f"{type(e).__name__}: {e}", template=template_str)

    def evaluate(self, expression: str, variables: Mapping[str, Any], template: Optional[str] = None) -> Any:
        """Evaluate a bare Jinja2 expression to its native value."""
        source = template or expression
        try:
            compiled = self.env.compile_expression(expression.strip(), undefined_to_none=False)
            value = compiled(**dict(variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}", template=source)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e}", template=source)
        except Exception as e:
            raise TemplateError(f"{type(e).__name__}: {e}", template=source)

        if isinstance(value, Undefined):
            name = getattr(value, '_undefined_name', None)
            raise TemplateError(
                f"Undefined variable: '{name or expression.strip()}' is undefined",
                template=source,
            )
        return value

    def render_recursive(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """Recursively render templates in a data structure."""
        if isinstance(data, str):
            return self.render(data, variables)

        if isinstance(data, dict):
            return {
                self.render(k, variables) if isinstance(k, str) else k:
                self.render_recursive(v, variables)
                for k, v in data.items()
            }

        if isinstance(data, (list, tuple)):
            return [self.render_recursive(item, variables) for item in data]

        # Return other types as-is (int, float, bool, None)
        return data

    def evaluate_when(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        """
        Evaluate a 'when' condition.

        Args:
            condition: Jinja2 expression (delimiters optional), bool, or list
                of expressions that must all hold

        Raises:
            TemplateError: If the condition is invalid or references an
                undefined variable
        """
        if condition is None or condition == '':
            return True
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, (list, tuple)):
            return all(self.evaluate_when(c, variables) for c in condition)

        expression = str(condition).strip()
        match = self._single_expression.match(expression)
        if match:
            expression = match.group('expr')

        return self._to_bool(self.evaluate(expression, variables, template=str(condition)))

    @staticmethod
    def _to_bool(value: Any) -> bool:
        """Convert a value to boolean (Ansible-style)."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            value_lower = value.lower().strip()
            if value_lower in ('true', 'yes', '1', 'on'):
                return True
            if value_lower in ('false', 'no', '0', 'off', ''):
                return False
            return True
        return bool(value)
