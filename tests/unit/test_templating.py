"""
Tests for the Jinja2 templating engine.
"""

import pytest

from stagehand.engine.errors import RenderError, UndefinedVariableError
from stagehand.engine.templating import TemplateEngine, TemplateVars
from stagehand.engine.variables import Layer, ScopeStack
from stagehand.engine.vault import VaultEncryptedValue, VaultLib, VaultSecret


@pytest.fixture
def engine() -> TemplateEngine:
    return TemplateEngine()


class TestRender:
    """Tests for render and render_recursive."""

    def test_plain_string_untouched(self, engine: TemplateEngine):
        assert engine.render("no templates here", {}) == "no templates here"
        assert engine.render(42, {}) == 42

    def test_lone_expression_is_native(self, engine: TemplateEngine):
        """A string that is exactly one expression keeps the value's type."""
        variables = {"ports": [80, 443], "count": 3, "conf": {"a": 1}}

        assert engine.render("{{ ports }}", variables) == [80, 443]
        assert engine.render("  {{ count + 1 }} ", variables) == 4

    def test_lone_expression_with_nested_braces(self, engine: TemplateEngine):
        variables = {"base": {"a": {"x": 1}}}

        merged = engine.render("{{ base | combine({'a': {'y': 2}}, recursive=true) }}", variables)

        assert merged == {"a": {"x": 1, "y": 2}}
        assert engine.render("{{- {'k': {'v': [1]}} -}}", {}) == {"k": {"v": [1]}}
        assert engine.render("{{ '}}' ~ 'x' }}", {}) == "}}x"

    def test_two_expressions_render_to_string(self, engine: TemplateEngine):
        assert engine.render("{{ a }}{{ b }}", {"a": 1, "b": 2}) == "12"
        assert engine.render("{{ a }}{# note #}", {"a": 1}) == "1"
        assert engine.evaluate_when("{{ {'a': {'b': 1}}.a.b == 1 }}", {}) is True
        assert engine.render("{{ conf }}", variables) == {"a": 1}

    def test_mixed_string(self, engine: TemplateEngine):
        assert engine.render("port={{ port }}!", {"port": 80}) == "port=80!"
        assert engine.render("{{ a }}-{{ b }}", {"a": 1, "b": 2}) == "1-2"

    def test_statements(self, engine: TemplateEngine):
        template = "{% for p in ports %}{{ p }} {% endfor %}"

        assert engine.render(template, {"ports": [1, 2]}) == "1 2 "

    def test_render_recursive(self, engine: TemplateEngine):
        data = {"dest": "/etc/{{ app }}.conf", "opts": ["{{ port }}", 5], "{{ app }}_key": None}

        assert engine.render_recursive(data, {"app": "shop", "port": 80}) == {
            "dest": "/etc/shop.conf", "opts": [80, 5], "shop_key": None}

    def test_undefined_variable(self, engine: TemplateEngine):
        with pytest.raises(UndefinedVariableError) as excinfo:
            engine.render("echo {{ missing }}", {})

        assert excinfo.value.variable == "missing"
        assert "Undefined variable: 'missing' is undefined" in str(excinfo.value)

    def test_undefined_lone_expression(self, engine: TemplateEngine):
        with pytest.raises(UndefinedVariableError, match="'missing'"):
            engine.render("{{ missing }}", {})

    def test_default_filter_covers_undefined(self, engine: TemplateEngine):
        assert engine.render("{{ missing | default('fallback') }}", {}) == "fallback"

    def test_syntax_error(self, engine: TemplateEngine):
        with pytest.raises(RenderError, match="syntax error"):
            engine.render("{{ a + }} text", {"a": 1})

    def test_evaluation_error(self, engine: TemplateEngine):
        with pytest.raises(RenderError, match="ZeroDivisionError"):
            engine.render("{{ 1 / 0 }}", {})


class TestLazyReferences:
    """Tests for variables that refer to other variables."""

    def test_chained_references(self, engine: TemplateEngine):
        variables = {"url": "http://{{ host }}:{{ port }}", "host": "{{ name }}.local",
                     "name": "web1", "port": 80}

        assert engine.render("{{ url }}", variables) == "http://web1.local:80"

    def test_reference_to_list(self, engine: TemplateEngine):
        variables = {"all_ports": "{{ ports + [8080] }}", "ports": [80]}

        assert engine.render("{{ all_ports }}", variables) == [80, 8080]

    def test_self_reference(self, engine: TemplateEngine):
        with pytest.raises(RenderError, match="Recursive loop detected in template for 'x'"):
            engine.render("{{ x }}", {"x": "{{ x }}"})

    def test_mutual_reference(self, engine: TemplateEngine):
        with pytest.raises(RenderError, match="Recursive loop detected"):
            engine.render("{{ a }}", {"a": "{{ b }}", "b": "{{ a }}"})

    def test_facts_are_not_templated(self, engine: TemplateEngine):
        """Registered output that looks like a template is returned as is."""
        stack = ScopeStack()
        stack.set(Layer.FACTS, "out", {"stdout": "{{ not_a_var }}"})

        assert engine.render("{{ out.stdout }}", stack) == "{{ not_a_var }}"

    def test_rescue_data_not_templated(self, engine: TemplateEngine):
        variables = {"failed_result": {"msg": "{{ boom }}"}}

        assert engine.render("{{ failed_result.msg }}", variables) == "{{ boom }}"

    def test_vault_values_decrypt(self, engine: TemplateEngine):
        vault = VaultLib([VaultSecret("pw")])
        secret = VaultEncryptedValue(vault.encrypt("hunter2"), vault)

        assert engine.render("{{ password }}", {"password": secret}) == "hunter2"
        assert engine.render("pw={{ password }}", {"password": secret}) == "pw=hunter2"
        assert engine.render(secret, {}) == "hunter2"

    def test_template_vars_mapping(self, engine: TemplateEngine):
        view = TemplateVars(engine, {"a": 1})

        assert "a" in view
        assert "range" in view
        assert list(view) == ["a"]
        assert len(view) == 1


class TestFilters:
    """Tests for custom filters."""

    @pytest.mark.parametrize("template,expected", [
        ("{{ data | to_json }}", '{"a": [1, 2]}'),
        ("{{ '{\"a\": 1}' | from_json }}", {"a": 1}),
        ("{{ 'a: 1' | from_yaml }}", {"a": 1}),
        ("{{ 'yes' | bool }}", True),
        ("{{ 'off' | bool }}", False),
        ("{{ '/etc/nginx/nginx.conf' | basename }}", "nginx.conf"),
        ("{{ '/etc/nginx/nginx.conf' | dirname }}", "/etc/nginx"),
        ("{{ 'web-01' | regex_replace('-0', '') }}", "web1"),
        ("{{ 'release 1.24.0' | regex_search('[0-9.]+') }}", "1.24.0"),
        ("{{ 'hello' | b64encode }}", "aGVsbG8="),
        ("{{ 'aGVsbG8=' | b64decode }}", "hello"),
        ("{{ true | ternary('on', 'off') }}", "on"),
        ("{{ {'a': 1} | combine({'b': 2}) }}", {"a": 1, "b": 2}),
        ("{{ {'a': {'x': 1}} | combine({'a': {'y': 2}}, recursive=true) }}", {"a": {"x": 1, "y": 2}}),
        ("{{ {'a': 1} | dict2items }}", [{"key": "a", "value": 1}]),
        ("{{ [{'key': 'a', 'value': 1}] | items2dict }}", {"a": 1}),
        ("{{ data.a | length }}", 2),
    ])
    def test_filters(self, engine: TemplateEngine, template, expected):
        assert engine.render(template, {"data": {"a": [1, 2]}}) == expected

    def test_to_yaml(self, engine: TemplateEngine):
        assert engine.render("{{ data | to_yaml }}", {"data": {"a": 1}}) == "a: 1\n"

    def test_mandatory(self, engine: TemplateEngine):
        assert engine.render("{{ x | mandatory }}", {"x": 1}) == 1
        with pytest.raises(UndefinedVariableError):
            engine.render("{{ missing | mandatory }}", {})
        with pytest.raises(RenderError, match="set the release"):
            engine.render("{{ missing | mandatory('set the release') }}", {})


class TestConditions:
    """Tests for evaluate_when and result tests."""

    @pytest.mark.parametrize("condition,expected", [
        (None, True),
        (True, True),
        (False, False),
        (0, False),
        ("", True),
        ("port == 80", True),
        ("{{ port == 80 }}", True),
        ("port > 80", False),
        ("'yes'", True),
        ("'no'", False),
        (["port == 80", "name == 'web1'"], True),
        (["port == 80", "name == 'db1'"], False),
        ([], True),
        ("name is string", True),
        ("port is number", True),
        ("missing is defined", False),
    ])
    def test_evaluate_when(self, engine: TemplateEngine, condition, expected):
        assert engine.evaluate_when(condition, {"port": 80, "name": "web1"}) is expected

    def test_undefined_in_condition(self, engine: TemplateEngine):
        with pytest.raises(UndefinedVariableError):
            engine.evaluate_when("missing == 1", {})

    @pytest.mark.parametrize("test,expected", [
        ("out is failed", True),
        ("out is succeeded", False),
        ("out is changed", True),
        ("out is skipped", False),
        ("out is not skipped", True),
    ])
    def test_result_tests(self, engine: TemplateEngine, test, expected):
        out = {"failed": True, "changed": True, "skipped": False}

        assert engine.evaluate_when(test, {"out": out}) is expected
