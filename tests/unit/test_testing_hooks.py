"""Tests for ClickHouseLifecycleHook."""

from unittest.mock import Mock

import pytest

from embedded_clickhouse.core.enums import LifecycleState
from embedded_clickhouse.core.errors import InstanceStateError
from embedded_clickhouse.testing.hooks import ClickHouseLifecycleHook


def fake_facade():
    facade = Mock()
    instance = Mock()
    instance.state = LifecycleState.READY
    facade.start.return_value = instance
    return facade, instance


class TestClickHouseLifecycleHook:
    def test_setup_and_teardown(self) -> None:
        facade, instance = fake_facade()
        hook = ClickHouseLifecycleHook(facade=facade, version="25.3.14.14-lts")

        assert hook.setup() is instance
        assert hook.instance is instance
        facade.start.assert_called_once_with(version="25.3.14.14-lts")

        hook.teardown()
        facade.stop.assert_called_once_with(instance)
        assert hook.instance is None

    def test_teardown_without_setup(self) -> None:
        facade, _ = fake_facade()
        hook = ClickHouseLifecycleHook(facade=facade)
        hook.teardown()
        facade.stop.assert_not_called()

    def test_teardown_after_failed_setup(self) -> None:
        facade, _ = fake_facade()
        facade.start.side_effect = InstanceStateError("boom")
        hook = ClickHouseLifecycleHook(facade=facade)
        with pytest.raises(InstanceStateError):
            hook.setup()
        hook.teardown()
        facade.stop.assert_not_called()

    def test_double_setup_rejected(self) -> None:
        facade, _ = fake_facade()
        hook = ClickHouseLifecycleHook(facade=facade)
        hook.setup()
        with pytest.raises(InstanceStateError):
            hook.setup()

    def test_setup_again_after_instance_stopped(self) -> None:
        facade, instance = fake_facade()
        hook = ClickHouseLifecycleHook(facade=facade)
        hook.setup()
        instance.state = LifecycleState.STOPPED
        hook.setup()
        assert facade.start.call_count == 2

    def test_context_manager(self) -> None:
        facade, instance = fake_facade()
        with ClickHouseLifecycleHook(facade=facade) as started:
            assert started is instance
        facade.stop.assert_called_once_with(instance)
