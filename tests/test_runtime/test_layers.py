"""Tests for layer ordering and lifecycle."""

import pytest

from horizon.errors import (
    CircularDependencyError, ConfigValidationError, LayerError, MissingDependencyError,
)
from horizon.models.container import ContainerSpec, HealthStatus
from horizon.models.layer import (
    BaseLayerSpec, LayerSpec, LayerStatus, LayerStrategy, LayersConfig, UserLayerSpec,
)
from horizon.runtime.containers import ContainerManager
from horizon.runtime.layers import LayerManager, order_layers


def _layer(name, *dependencies, **fields):
    return LayerSpec(
        name=name,
        container=ContainerSpec(name=f"{name}-ctr", image="fedora"),
        dependencies=list(dependencies),
        **fields,
    )


@pytest.fixture
def layers(tmp_path, runner):
    return LayerManager(ContainerManager(runner, bin_dir=tmp_path / "bin"))


class TestOrderLayers:
    """Test dependency ordering."""

    def test_chain_regardless_of_input_order(self):
        a, b, c = _layer("a"), _layer("b", "a"), _layer("c", "b")

        for declared in ([a, b, c], [c, b, a], [b, c, a]):
            assert [spec.name for spec in order_layers(declared)] == ["a", "b", "c"]

    def test_priority_then_declaration_order(self):
        ordered = order_layers([
            _layer("late", priority=90),
            _layer("first", priority=10),
            _layer("tie-one"),
            _layer("tie-two"),
        ])
        assert [spec.name for spec in ordered] == ["first", "tie-one", "tie-two", "late"]

    def test_base_dependency_is_implicit(self):
        assert [spec.name for spec in order_layers([_layer("dev", "base")])] == ["dev"]

    def test_cycle(self):
        with pytest.raises(CircularDependencyError) as exc_info:
            order_layers([_layer("x", "y"), _layer("y", "x"), _layer("ok")])
        assert exc_info.value.unresolved == ["x", "y"]

    def test_missing_dependency(self):
        with pytest.raises(MissingDependencyError) as exc_info:
            order_layers([_layer("dev", "toolchain")])
        assert exc_info.value.dependency == "toolchain"

    def test_reserved_name(self):
        with pytest.raises(ConfigValidationError):
            order_layers([_layer("user")])


@pytest.mark.asyncio
class TestLayerManager:
    """Test deployment and start/stop."""

    async def test_cycle_deploys_nothing(self, layers, runner):
        config = LayersConfig(system=[_layer("x", "y"), _layer("y", "x")])

        with pytest.raises(CircularDependencyError):
            await layers.deploy_layers(config)

        assert runner.calls == []
        assert await layers.list_layers() == []

    async def test_deploy_in_order(self, layers, runner):
        config = LayersConfig(system=[_layer("c", "b"), _layer("a"), _layer("b", "a")])

        results = await layers.deploy_layers(config)

        assert all(r.success for r in results)
        assert [r.layer.name for r in results] == ["base", "a", "b", "c"]
        created = [call[3] for call in runner.called("podman", "create")]
        assert created == ["a-ctr", "b-ctr", "c-ctr"]

    async def test_always_on_layer_is_started(self, layers, runner):
        results = await layers.deploy_layers(
            LayersConfig(system=[_layer("db", strategy=LayerStrategy.ALWAYS_ON)])
        )

        assert results[-1].layer.status == LayerStatus.RUNNING
        assert runner.called("podman", "start", "db-ctr")

    async def test_failed_dependency_blocks_dependent(self, layers, runner):
        runner.fail("podman", "create", "--name", "a-ctr")

        results = await layers.deploy_layers(LayersConfig(system=[_layer("a"), _layer("b", "a")]))

        assert [r.success for r in results] == [True, False, False]
        assert "dependency a" in results[-1].message

    async def test_base_commit_mismatch(self, layers, runner):
        runner.on("ostree", "rev-parse", stdout="deadbeef\n")
        config = LayersConfig(base=BaseLayerSpec(ostree_commit="cafebabe"))

        results = await layers.deploy_layers(config)

        assert not results[0].success

    async def test_user_layer_flatpaks(self, layers, runner):
        config = LayersConfig(user=UserLayerSpec(flatpaks=["org.mozilla.firefox"]))

        results = await layers.deploy_layers(config)

        assert results[-1].layer.name == "user"
        assert runner.called("flatpak", "install", "--user")

    async def test_start_and_stop(self, layers, runner):
        await layers.deploy_layers(LayersConfig(system=[_layer("dev")]))

        assert (await layers.start_layer("dev")).status == LayerStatus.RUNNING
        assert (await layers.stop_layer("dev")).status == LayerStatus.STOPPED
        assert runner.called("podman", "stop", "dev-ctr")

    async def test_on_demand_stopped_layer_is_healthy(self, layers):
        await layers.deploy_layers(LayersConfig(system=[_layer("dev")]))

        assert await layers.layer_health("dev") == HealthStatus.HEALTHY

    async def test_ephemeral_layer_lifecycle(self, layers, runner):
        await layers.deploy_layers(
            LayersConfig(system=[_layer("scratch", strategy=LayerStrategy.EPHEMERAL)])
        )
        assert runner.called("podman", "create") == []

        await layers.start_layer("scratch")
        assert "scratch-ctr" in layers.container_manager

        await layers.stop_layer("scratch")
        assert "scratch-ctr" not in layers.container_manager

    async def test_base_layer_cannot_be_started(self, layers):
        await layers.deploy_layers(LayersConfig())
        with pytest.raises(LayerError):
            await layers.start_layer("base")

    async def test_remove_refused_while_required(self, layers):
        await layers.deploy_layers(LayersConfig(system=[_layer("a"), _layer("b", "a")]))

        with pytest.raises(LayerError):
            await layers.remove_layer("a")

        await layers.remove_layer("b")
        await layers.remove_layer("a")
        assert layers.get_layer("a") is None
