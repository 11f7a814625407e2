# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Templating Engine

Jinja2-based templating with a small filter set for variable expansion.
A string that is exactly one ``{{ expression }}`` renders to the native
value of the expression (list, dict, int...), anything else renders to a
string.
"""

import base64
import json
import logging
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterator, Optional, Set

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError, nodes
from jinja2.runtime import Undefined

from stagehand.engine.errors import RenderError, StagehandError, UndefinedVariableError
from stagehand.engine.variables import UNDEFINED, Layer, combine
from stagehand.engine.vault import VaultEncryptedValue

logger = logging.getLogger(__name__)

_UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined")
_RESULT_NAME = 'stagehand_expression_value'

# Result data injected for rescue sections; returned as stored
RESULT_DATA_NAMES = frozenset(('failed_task', 'failed_result'))


def _filter_to_yaml(value: Any) -> str:
    """Convert value to YAML string."""
    return yaml.safe_dump(value, default_flow_style=False)


def _filter_bool(value: Any) -> bool:
    """Convert value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', 'yes', '1', 'on')
    return bool(value)


def _filter_basename(path: str) -> str:
    """Get basename of a path."""
    import os
    return os.path.basename(str(path))


def _filter_dirname(path: str) -> str:
    """Get directory name of a path."""
    import os
    return os.path.dirname(str(path))


def _filter_regex_replace(value: str, pattern: str, replacement: str = '') -> str:
    """Regex replacement in string."""
    return re.sub(pattern, replacement, str(value))


def _filter_regex_search(value: str, pattern: str) -> Optional[str]:
    match = re.search(pattern, str(value))
    return match.group(0) if match else None


def _filter_b64decode(value: str) -> str:
    """Decode base64 encoded string."""
    return base64.b64decode(value).decode('utf-8')


def _filter_b64encode(value: str) -> str:
    """Encode string to base64."""
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(value.encode('utf-8')).decode('utf-8')


def _filter_ternary(value: Any, true_val: Any, false_val: Any) -> Any:
    return true_val if value else false_val


def _filter_mandatory(value: Any, msg: Optional[str] = None) -> Any:
    if isinstance(value, Undefined):
        name = getattr(value, '_undefined_name', None)
        if msg:
            raise RenderError(msg, variable=name)
        raise UndefinedVariableError(name)
    return value


def _filter_combine(*terms: Any, recursive: bool = False, list_merge: str = 'replace') -> Dict[str, Any]:
    return combine(*terms, recursive=recursive, list_merge=list_merge)


def _filter_dict2items(value: Dict[str, Any]) -> list:
    return [{'key': k, 'value': v} for k, v in value.items()]


def _filter_items2dict(value: list) -> Dict[str, Any]:
    return {item['key']: item['value'] for item in value}


def _result_flag(value: Any, flag: str) -> bool:
    """Read a flag from a registered result (dict or TaskResult)."""
    if isinstance(value, Mapping):
        return bool(value.get(flag, False))
    return bool(getattr(value, flag, False))


def _test_failed(value: Any) -> bool:
    return _result_flag(value, 'failed')


def _test_succeeded(value: Any) -> bool:
    return not _result_flag(value, 'failed')


def _test_changed(value: Any) -> bool:
    return _result_flag(value, 'changed')


def _test_skipped(value: Any) -> bool:
    return _result_flag(value, 'skipped')


# Jinja2's own default/d, lower, upper, replace, trim, length, join,
# first, last, int and string are used unchanged.
CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'to_json': lambda x: json.dumps(x, default=str),
    'to_nice_json': lambda x: json.dumps(x, indent=4, sort_keys=True, default=str),
    'from_json': lambda x: json.loads(x),
    'to_yaml': _filter_to_yaml,
    'from_yaml': lambda x: yaml.safe_load(x),
    'bool': _filter_bool,
    'basename': _filter_basename,
    'dirname': _filter_dirname,
    'regex_replace': _filter_regex_replace,
    'regex_search': _filter_regex_search,
    'b64decode': _filter_b64decode,
    'b64encode': _filter_b64encode,
    'ternary': _filter_ternary,
    'mandatory': _filter_mandatory,
    'combine': _filter_combine,
    'dict2items': _filter_dict2items,
    'items2dict': _filter_items2dict,
}

CUSTOM_TESTS: Dict[str, Callable[..., bool]] = {
    'failed': _test_failed,
    'failure': _test_failed,
    'succeeded': _test_succeeded,
    'success': _test_succeeded,
    'changed': _test_changed,
    'change': _test_changed,
    'skipped': _test_skipped,
    'skip': _test_skipped,
}


def _native(value: Any) -> Any:
    """Decrypt vault values that come out of a native evaluation."""
    if isinstance(value, VaultEncryptedValue):
        return value.decrypt()
    return value


class TemplateVars(Mapping):
    """
    Read-only view of the variables handed to Jinja2.

    Values are templated when they are looked up, so a variable may refer
    to other variables; vault values are decrypted at the same point.
    Registered results and facts are returned as stored.
    """

    def __init__(self, engine: 'TemplateEngine', variables: Mapping,
                 resolving: Optional[Set[str]] = None):
        self._engine = engine
        self._variables = variables
        self._resolving: Set[str] = resolving if resolving is not None else set()

    def __getitem__(self, name: str) -> Any:
        if name not in self._variables:
            # Jinja2 looks globals such as range() up here too
            return self._engine.env.globals[name]

        value = self._variables[name]
        if isinstance(value, VaultEncryptedValue):
            return value.decrypt()
        if not isinstance(value, (str, dict, list)) or not self._templated(name):
            return value

        if name in self._resolving:
            raise RenderError(f"Recursive loop detected in template for '{name}'", variable=name)
        self._resolving.add(name)
        try:
            return self._engine.render_recursive(value, self._variables, self._resolving)
        finally:
            self._resolving.discard(name)

    def _templated(self, name: str) -> bool:
        if name in RESULT_DATA_NAMES:
            return False
        defining_layer = getattr(self._variables, 'defining_layer', None)
        return defining_layer is None or defining_layer(name) != Layer.FACTS

    def __contains__(self, name: object) -> bool:
        return name in self._variables or name in self._engine.env.globals

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)


class TemplateEngine:
    """
    Jinja2 templating engine.

    Provides:
    - Variable interpolation in strings, native values for lone expressions
    - Recursive template rendering in dicts/lists
    - Condition evaluation for ``when``/``failed_when``/``changed_when``/``until``
    - Result tests: failed, succeeded, changed, skipped

    Undefined variables raise UndefinedVariableError; vault errors raised
    while decrypting a value propagate unchanged.
    """

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            # Don't auto-escape (we're not rendering HTML)
            autoescape=False,
            # Keep trailing newlines
            keep_trailing_newline=True,
        )

        self.env.filters.update(CUSTOM_FILTERS)
        self.env.tests.update(CUSTOM_TESTS)
        self.env.tests['string'] = lambda x: isinstance(x, str)
        self.env.tests['number'] = lambda x: isinstance(x, (int, float)) and not isinstance(x, bool)
        self.env.tests['iterable'] = lambda x: hasattr(x, '__iter__') and not isinstance(x, str)

    def render(self, template_str: Any, variables: Mapping,
               resolving: Optional[Set[str]] = None) -> Any:
        """
        Render a template string with variables.

        Args:
            template_str: String potentially containing {{ }} expressions
            variables: Mapping of variables (a dict or a ScopeStack)
            resolving: Names being templated further up the call chain

        Returns:
            Native value for a lone ``{{ expr }}``, otherwise the rendered string

        Raises:
            UndefinedVariableError: A referenced variable is undefined
            RenderError: The template is invalid or evaluation failed
        """
        if isinstance(template_str, VaultEncryptedValue):
            return template_str.decrypt()
        if not isinstance(template_str, str):
            return template_str

        # Fast path: no template markers
        if '{{' not in template_str and '{%' not in template_str:
            return template_str

        expression = self._lone_expression(template_str)
        if expression is not None:
            return self.evaluate(expression, variables, template=template_str,
                                 resolving=resolving)

        def run() -> str:
            template = self.env.from_string(template_str)
            return str(template.make_module(TemplateVars(self, variables, resolving), shared=True))

        return self._guard(run, template_str)

    def _lone_expression(self, template_str: str) -> Optional[str]:
        """Source of the one ``{{ expression }}`` that makes up the template, if any."""
        source = template_str.strip()
        if not (source.startswith('{{') and source.endswith('}}')):
            return None
        try:
            body = self.env.parse(source).body
        except TemplateSyntaxError:
            return None
        if len(body) != 1 or not isinstance(body[0], nodes.Output):
            return None
        if len(body[0].nodes) != 1 or isinstance(body[0].nodes[0], nodes.TemplateData):
            return None
        # Whitespace control markers belong to the delimiters
        start = 3 if source[2] in '-+' else 2
        end = -3 if source[-3] in '-+' else -2
        return source[start:end]

    def evaluate(self, expression: str, variables: Mapping, template: Optional[str] = None,
                 resolving: Optional[Set[str]] = None) -> Any:
        """Evaluate a bare Jinja2 expression to its native value."""
        source = template or expression

        def run() -> Any:
            compiled = self.env.from_string(
                '{%% set %s = (%s) %%}' % (_RESULT_NAME, expression.strip())
            )
            module = compiled.make_module(TemplateVars(self, variables, resolving), shared=True)
            value = getattr(module, _RESULT_NAME)
            if isinstance(value, Undefined):
                raise UndefinedVariableError(getattr(value, '_undefined_name', None), source)
            return _native(value)

        return self._guard(run, source)

    def _guard(self, func: Callable[[], Any], template: str) -> Any:
        try:
            return func()
        except StagehandError:
            # Includes vault errors and our own render errors
            raise
        except UndefinedError as e:
            name_match = _UNDEFINED_NAME.search(str(e))
            raise UndefinedVariableError(name_match.group(1) if name_match else None, template)
        except TemplateSyntaxError as e:
            raise RenderError(f"Template syntax error: {e}", template=template)
        except Exception as e:
            raise RenderError(f"{type(e).__name__}: {e}", template=template)

    def render_recursive(self, data: Any, variables: Mapping,
                         resolving: Optional[Set[str]] = None) -> Any:
        """
        Recursively render templates in a data structure.

        Args:
            data: Data structure (dict, list, or scalar)
            variables: Mapping of variables for rendering
            resolving: Names being templated further up the call chain

        Returns:
            Data structure with all templates rendered
        """
        if isinstance(data, (str, VaultEncryptedValue)):
            return self.render(data, variables, resolving)

        if isinstance(data, dict):
            return {
                self.render(k, variables, resolving) if isinstance(k, str) else k:
                self.render_recursive(v, variables, resolving)
                for k, v in data.items()
            }

        if isinstance(data, list):
            return [self.render_recursive(item, variables, resolving) for item in data]

        # Return other types as-is (int, float, bool, None)
        return data

    def evaluate_when(self, condition: Any, variables: Mapping) -> bool:
        """
        Evaluate a condition.

        Args:
            condition: Jinja2 expression (with or without {{ }}), bool,
                or a list of conditions that must all hold
            variables: Mapping of variables for evaluation

        Returns:
            Boolean result of the condition

        Raises:
            RenderError: If the condition is invalid or references undefined names
        """
        if condition is None or condition is UNDEFINED:
            return True
        if isinstance(condition, list):
            return all(self.evaluate_when(c, variables) for c in condition)
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, (int, float)):
            return bool(condition)

        condition = str(condition).strip()
        if not condition:
            return True

        expression = self._lone_expression(condition)
        if expression is not None:
            condition = expression

        return self._to_bool(self.evaluate(condition, variables))

    def _to_bool(self, value: Any) -> bool:
        """Convert a value to boolean."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            value_lower = value.lower().strip()
            if value_lower in ('true', 'yes', '1', 'on'):
                return True
            if value_lower in ('false', 'no', '0', 'off', ''):
                return False
            # Non-empty strings are truthy
            return True
        return bool(value)


# Singleton instance for convenience
_engine: Optional[TemplateEngine] = None


def get_template_engine() -> TemplateEngine:
    """Get the singleton template engine instance."""
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine


def render(template_str: Any, variables: Mapping) -> Any:
    """Convenience function to render a template."""
    return get_template_engine().render(template_str, variables)


def render_recursive(data: Any, variables: Mapping) -> Any:
    """Convenience function to render templates recursively."""
    return get_template_engine().render_recursive(data, variables)


def evaluate_when(condition: Any, variables: Mapping) -> bool:
    """Convenience function to evaluate a when condition."""
    return get_template_engine().evaluate_when(condition, variables)
