"""
Tests for plan and apply rendering, including redaction of sensitive values.
"""

from terrycore.core.render import KNOWN_AFTER_APPLY, SENSITIVE, render_apply_result, render_plan
from terrycore.core.values import Value

from conftest import resource


class TestRenderPlan:

    def test_create_summary(self, engine, registry):
        plan = engine.plan([
            resource("test_thing", "a", size=1),
            resource("test_thing", "b", parent=Value.reference("test_thing.a.id")),
        ])
        text = render_plan(plan, registry)

        assert "+ test_thing.a" in text
        assert "size = 1" in text
        assert "${test_thing.a.id}" in text or KNOWN_AFTER_APPLY in text
        assert text.splitlines()[-1] == "Plan: 2 to add, 0 to change, 0 to destroy."

    def test_replace_counts_as_add_and_destroy(self, engine, registry):
        engine.apply(engine.plan([resource("test_server", "web", image="v1")]))
        text = render_plan(engine.plan([resource("test_server", "web", image="v2")]), registry)

        assert "-/+ test_server.web" in text
        assert "# forces replacement" in text
        assert text.splitlines()[-1] == "Plan: 1 to add, 0 to change, 1 to destroy."

    def test_no_changes(self, engine, registry):
        engine.apply(engine.plan([resource("test_thing", "a")]))
        text = render_plan(engine.plan([resource("test_thing", "a")]), registry)
        assert text == "No changes. Infrastructure matches the configuration."

    def test_sensitive_values_never_shown(self, engine, registry):
        config = [resource("test_server", "web", image="v1", password="hunter2")]
        text = render_plan(engine.plan(config), registry)
        assert "hunter2" not in text
        assert SENSITIVE in text

        engine.apply(engine.plan(config))
        config = [resource("test_server", "web", image="v1", password="correct-horse",
                           note="was hunter2")]
        text = render_plan(engine.plan(config), registry)
        assert "hunter2" not in text
        assert "correct-horse" not in text

    def test_short_sensitive_value_leaves_summary_intact(self, engine, registry):
        plan = engine.plan([resource("test_server", "web", image="v1", password=1)])
        lines = render_plan(plan, registry).splitlines()

        assert f"      password = {SENSITIVE}" in lines
        assert lines[-1] == "Plan: 1 to add, 0 to change, 0 to destroy."

    def test_drift_is_listed(self, engine, registry, provider):
        engine.apply(engine.plan([resource("test_thing", "a", size=1)]))
        external_id = engine.state_show("test_thing.a").external_id
        provider.objects[external_id]["size"] = 5

        text = render_plan(engine.plan([resource("test_thing", "a", size=1)]), registry)
        assert "! test_thing.a changed outside of management (size)" in text
        assert "~ test_thing.a" in text


class TestRenderApplyResult:

    def test_complete(self, engine):
        result = engine.apply(engine.plan([resource("test_thing", "a")]))
        assert render_apply_result(result) == (
            "Apply complete! Resources: 1 added, 0 changed, 0 destroyed, 0 failed, 0 skipped."
        )

    def test_incomplete_lists_errors(self, engine, provider):
        provider.fail_create.add("a")
        result = engine.apply(engine.plan([
            resource("test_thing", "a"),
            resource("test_thing", "b", depends_on=["test_thing.a"]),
        ]))
        lines = render_apply_result(result).splitlines()

        assert lines[0].startswith("  failed: test_thing.a:")
        assert lines[1].startswith("  skipped: test_thing.b:")
        assert lines[-1].startswith("Apply incomplete.")
        assert "1 failed, 1 skipped" in lines[-1]
