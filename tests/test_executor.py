"""
Tests for applying plans: ordering, concurrency, failure containment,
cancellation and per-change commits.
"""

import threading
from unittest.mock import patch

import pytest

from terrycore.core.differ import Action
from terrycore.core.errors import StateBackendError
from terrycore.core.executor import ChangeStatus, Executor
from terrycore.core.providers import ResourceTypePolicy
from terrycore.core.values import Value

from conftest import FakeProvider, data_source, resource


def ref(text):
    return Value.reference(text)


def chain():
    return [
        resource("test_thing", "a"),
        resource("test_thing", "b", parent=ref("test_thing.a.id")),
        resource("test_thing", "c", parent=ref("test_thing.b.id")),
    ]


def addresses(engine):
    return [record.address for record in engine.state_list()]


def status(result, address):
    return result.get(address).status


class TestApply:

    def test_creates_in_dependency_order(self, engine, provider):
        result = engine.apply(engine.plan(chain()))

        assert result.success
        assert provider.actions("create") == ["a", "b", "c"]
        assert addresses(engine) == ["test_thing.a", "test_thing.b", "test_thing.c"]

        a = engine.state_show("test_thing.a")
        b = engine.state_show("test_thing.b")
        assert b.attributes["parent"] == a.external_id
        assert b.dependencies == ["test_thing.a"]
        assert b.provider == "test"

    def test_second_plan_is_empty(self, engine):
        engine.apply(engine.plan(chain()))
        serial = engine.store.snapshot().serial

        plan = engine.plan(chain())
        assert not plan.has_changes
        assert all(c.action == Action.NOOP for c in plan.changes)

        result = engine.apply(plan)
        assert result.success
        assert all(o.status == ChangeStatus.NOOP for o in result.outcomes)
        assert engine.store.snapshot().serial == serial

    def test_failure_skips_dependents_and_keeps_successes(self, engine, provider):
        provider.fail_create.add("b")
        result = engine.apply(engine.plan(chain()))

        assert status(result, "test_thing.a") == ChangeStatus.APPLIED
        assert status(result, "test_thing.b") == ChangeStatus.FAILED
        assert status(result, "test_thing.c") == ChangeStatus.SKIPPED
        assert "cannot create b" in result.get("test_thing.b").error
        assert result.partial
        assert addresses(engine) == ["test_thing.a"]
        assert provider.actions("create") == ["a", "b"]

    def test_rerun_after_failure_resumes(self, engine, provider):
        provider.fail_create.add("b")
        engine.apply(engine.plan(chain()))
        provider.fail_create.clear()

        plan = engine.plan(chain())
        assert [(c.address, c.action) for c in plan.changes] == [
            ("test_thing.a", Action.NOOP),
            ("test_thing.b", Action.CREATE),
            ("test_thing.c", Action.CREATE),
        ]
        result = engine.apply(plan)
        assert result.success
        assert provider.actions("create") == ["a", "b", "b", "c"]

    def test_independent_failure_does_not_stop_siblings(self, engine, provider):
        provider.fail_create.add("x")
        result = engine.apply(engine.plan([
            resource("test_thing", "x"),
            resource("test_thing", "y"),
            resource("test_thing", "z", parent=ref("test_thing.y.id")),
        ]))

        assert result.failed == ["test_thing.x"]
        assert result.applied == ["test_thing.y", "test_thing.z"]

    def test_parallelism_bounds_concurrent_calls(self, engine, provider):
        provider.delay = 0.1
        result = engine.apply(engine.plan([resource("test_thing", f"r{i}") for i in range(8)]))

        assert result.success
        assert 1 < provider.max_active <= engine.parallelism

    def test_parallelism_one_is_sequential(self, engine, provider):
        provider.delay = 0.02
        engine.parallelism = 1
        engine.apply(engine.plan([resource("test_thing", f"r{i}") for i in range(4)]))
        assert provider.max_active == 1

    def test_invalid_parallelism(self, store, registry):
        with pytest.raises(ValueError):
            Executor(store, registry, parallelism=0)

    def test_summary(self, engine):
        result = engine.apply(engine.plan(chain()))
        summary = result.summary()
        assert summary["created"] == 3
        assert summary["failed"] == 0
        assert summary["skipped"] == 0


class TestReplace:

    def test_delete_then_create(self, engine, server_provider):
        engine.apply(engine.plan([resource("test_server", "web", image="v1")]))
        result = engine.apply(engine.plan([resource("test_server", "web", image="v2")]))

        assert result.success
        assert result.summary()["replaced"] == 1
        writes = [call for call in server_provider.calls if call[0] != "read"]
        assert writes == [("create", "web"), ("delete", "srv-1"), ("create", "web")]

        record = engine.state_show("test_server.web")
        assert record.external_id == "srv-2"
        assert record.attributes["image"] == "v2"
        assert record.schema_version == 2

    def test_create_before_destroy(self, engine, registry, server_provider):
        registry.register(
            "test_server",
            server_provider,
            ResourceTypePolicy(immutable_fields={"image"}, create_before_destroy=True),
        )
        engine.apply(engine.plan([resource("test_server", "web", image="v1")]))
        engine.apply(engine.plan([resource("test_server", "web", image="v2")]))

        writes = [call for call in server_provider.calls if call[0] != "read"]
        assert writes == [("create", "web"), ("create", "web"), ("delete", "srv-1")]
        assert list(server_provider.objects) == ["srv-2"]

    def test_failed_create_after_delete_forgets_old_object(self, engine, server_provider):
        engine.apply(engine.plan([resource("test_server", "web", image="v1")]))
        server_provider.fail_create.add("web")

        result = engine.apply(engine.plan([resource("test_server", "web", image="v2")]))

        assert status(result, "test_server.web") == ChangeStatus.FAILED
        assert addresses(engine) == []
        assert server_provider.objects == {}

    def test_dependents_see_new_identifier(self, engine):
        config = [
            resource("test_server", "web", image="v1"),
            resource("test_thing", "dns", target=ref("test_server.web.id")),
        ]
        engine.apply(engine.plan(config))
        config[0] = resource("test_server", "web", image="v2")

        plan = engine.plan(config)
        assert plan.get("test_thing.dns").action == Action.UPDATE
        engine.apply(plan)

        assert engine.state_show("test_thing.dns").attributes["target"] == "srv-2"


class TestDestroy:

    def test_destroy_reverses_dependency_order(self, engine, provider):
        engine.apply(engine.plan(chain()))
        ids = {r.address: r.external_id for r in engine.state_list()}

        result = engine.destroy()

        assert result.success
        assert provider.actions("delete") == [
            ids["test_thing.c"], ids["test_thing.b"], ids["test_thing.a"],
        ]
        assert addresses(engine) == []

    def test_failed_destroy_keeps_dependencies(self, engine, provider):
        engine.apply(engine.plan(chain()))
        b = engine.state_show("test_thing.b")
        provider.fail_delete.add(b.external_id)

        result = engine.destroy()

        assert status(result, "test_thing.c") == ChangeStatus.APPLIED
        assert status(result, "test_thing.b") == ChangeStatus.FAILED
        assert status(result, "test_thing.a") == ChangeStatus.SKIPPED
        assert addresses(engine) == ["test_thing.a", "test_thing.b"]

    def test_new_dependency_is_recorded_without_changes(self, engine, provider):
        engine.apply(engine.plan([resource("test_thing", "z"), resource("test_thing", "a")]))
        config = [
            resource("test_thing", "z"),
            resource("test_thing", "a", depends_on=["test_thing.z"]),
        ]

        plan = engine.plan(config)
        assert not plan.has_changes
        assert engine.apply(plan).success
        assert engine.state_show("test_thing.a").dependencies == ["test_thing.z"]
        assert provider.actions("update") == []

        removal = engine.plan([])
        assert [(c.address, c.depends_on) for c in removal.changes] == [
            ("test_thing.a", ()),
            ("test_thing.z", ("test_thing.a",)),
        ]

    def test_removed_from_configuration(self, engine, provider):
        engine.apply(engine.plan(chain()))
        plan = engine.plan(chain()[:1])

        assert [(c.address, c.action) for c in plan.changes] == [
            ("test_thing.a", Action.NOOP),
            ("test_thing.c", Action.DESTROY),
            ("test_thing.b", Action.DESTROY),
        ]
        engine.apply(plan)
        assert addresses(engine) == ["test_thing.a"]


class TestDataSources:

    def config(self):
        return [
            data_source("test_lookup", "base", id="img-1"),
            resource("test_server", "web", image=ref("data.test_lookup.base.name")),
        ]

    def test_read_feeds_dependents(self, engine, lookup_provider):
        lookup_provider.seed("img-1", name="base-image")
        result = engine.apply(engine.plan(self.config()))

        assert result.success
        assert status(result, "data.test_lookup.base") == ChangeStatus.APPLIED
        assert engine.state_show("test_server.web").attributes["image"] == "base-image"
        assert engine.state_show("data.test_lookup.base").mode == "data"

    def test_second_plan_uses_last_read(self, engine, lookup_provider):
        lookup_provider.seed("img-1", name="base-image")
        engine.apply(engine.plan(self.config()))

        plan = engine.plan(self.config())
        assert not plan.has_changes
        assert plan.get("data.test_lookup.base").action == Action.READ
        assert plan.get("test_server.web").action == Action.NOOP

    def test_missing_data_source_fails_dependents(self, engine):
        result = engine.apply(engine.plan(self.config()))

        assert status(result, "data.test_lookup.base") == ChangeStatus.FAILED
        assert status(result, "test_server.web") == ChangeStatus.SKIPPED

    def test_destroy_forgets_data_without_calls(self, engine, lookup_provider):
        lookup_provider.seed("img-1", name="base-image")
        engine.apply(engine.plan(self.config()))
        engine.destroy()

        assert addresses(engine) == []
        assert lookup_provider.actions("delete") == []
        assert "img-1" in lookup_provider.objects


class TestInterruption:

    def test_cancel_stops_dispatch(self, engine, provider, monkeypatch):
        cancel = threading.Event()
        create = provider.create

        def create_then_cancel(attributes):
            cancel.set()
            return create(attributes)

        monkeypatch.setattr(provider, "create", create_then_cancel)
        engine.parallelism = 1
        decls = [resource("test_thing", name) for name in ("a", "b", "c")]

        result = engine.apply(engine.plan(decls), cancel_event=cancel)

        assert result.cancelled
        assert status(result, "test_thing.a") == ChangeStatus.APPLIED
        assert status(result, "test_thing.b") == ChangeStatus.CANCELLED
        assert status(result, "test_thing.c") == ChangeStatus.CANCELLED
        assert addresses(engine) == ["test_thing.a"]

        # Planning again picks up where the run stopped
        plan = engine.plan(decls)
        assert [c.action for c in plan.changes] == [Action.NOOP, Action.CREATE, Action.CREATE]

    def test_commit_failure_is_reported_and_halts(self, engine, provider):
        plan = engine.plan(chain()[:2])
        with patch.object(engine.store, "commit", side_effect=StateBackendError("disk full")):
            result = engine.apply(plan)

        a = result.get("test_thing.a")
        assert a.status == ChangeStatus.UNCOMMITTED
        assert a.external_id in provider.objects
        assert "disk full" in a.error
        assert status(result, "test_thing.b") == ChangeStatus.SKIPPED
        assert result.uncommitted == ["test_thing.a"]
        assert addresses(engine) == []

    def test_unexpected_provider_exception_is_contained(self, engine, registry):
        class Exploding(FakeProvider):
            def create(self, attributes):
                raise KeyError("surprise")

        registry.register("test_thing", Exploding())
        result = engine.apply(engine.plan(chain()))

        assert status(result, "test_thing.a") == ChangeStatus.FAILED
        assert result.skipped == ["test_thing.b", "test_thing.c"]
