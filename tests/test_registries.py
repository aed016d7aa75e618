from typing import Any

import pytest

from reportq.v1.core.registries import (
    PayloadValidatorRegistry,
    Registry,
    WorkHandlerRegistry,
    payload_validator_registry,
    work_handler_registry,
)
from reportq.v1.jobs import registry_init  # noqa: F401
from reportq.v1.jobs.handlers import ReportGenerator


class MockValidator:
    def validate(self, payload: dict[str, Any]) -> None:
        return None


class MockWork:
    async def __call__(self, job, settings) -> str:
        return "http://reports.example.com/mock.pdf"


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    # Test empty registry
    assert registry.list() == []

    # Test register and get
    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert "test_impl" in registry
    assert "other" not in registry

    # Test KeyError for missing implementation
    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_freeze():
    """Test that frozen registries reject new registrations."""
    registry = PayloadValidatorRegistry()
    registry.register("before", MockValidator())

    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("after", MockValidator())
    assert registry.list() == ["before"]


def test_work_handler_registry_falls_back_to_default():
    registry = WorkHandlerRegistry()
    default = MockWork()
    specific = MockWork()
    registry.register(WorkHandlerRegistry.DEFAULT, default)
    registry.register("sales_summary", specific)

    assert registry.resolve("sales_summary") is specific
    assert registry.resolve("user_activity") is default


def test_work_handler_registry_without_default():
    registry = WorkHandlerRegistry()

    with pytest.raises(KeyError):
        registry.resolve("anything")


def test_builtin_job_types_registered():
    """Test that importing registry_init registers the built-in plug-ins."""
    assert set(payload_validator_registry.list()) >= {"sales_summary", "user_activity"}
    assert isinstance(
        work_handler_registry.get(WorkHandlerRegistry.DEFAULT), ReportGenerator
    )
