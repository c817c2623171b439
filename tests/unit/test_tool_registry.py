import pytest
from pydantic import BaseModel, Field, ValidationError

from scholar_rag.agent.registry import ToolRegistry, ToolSpec
from scholar_rag.errors import ToolUnavailable


class EchoInput(BaseModel):
    value: int = Field(ge=1)


async def _echo(data: EchoInput) -> dict[str, int]:
    return {"value": data.value}


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="echo",
            description="echo positive int",
            args_schema=EchoInput,
            handler=_echo,
        )
    )
    return registry


async def test_tool_registry_validation() -> None:
    registry = _registry()

    assert await registry.execute("echo", {"value": 3}) == {"value": 3}

    with pytest.raises(ValidationError):
        await registry.execute("echo", {"value": 0})


def test_duplicate_tool_registration_rejected() -> None:
    registry = _registry()

    with pytest.raises(ValueError):
        registry.register(
            ToolSpec(
                name="echo",
                description="echo positive int",
                args_schema=EchoInput,
                handler=_echo,
            )
        )


async def test_unknown_tool_hits_unavailable_arm() -> None:
    registry = _registry()

    with pytest.raises(ToolUnavailable):
        await registry.execute("summon_oracle", {})

    outcome = await registry.dispatch("summon_oracle", {})
    assert outcome.status == "unavailable"
    assert outcome.output is None


async def test_dispatch_folds_handler_errors_into_outcome() -> None:
    registry = ToolRegistry()

    async def _boom(data: EchoInput) -> dict[str, int]:
        raise RuntimeError("backend down")

    registry.register(ToolSpec(name="boom", description="fails", args_schema=EchoInput, handler=_boom))

    failed = await registry.dispatch("boom", {"value": 1})
    invalid = await registry.dispatch("boom", {"value": -1})

    assert failed.status == "error"
    assert "backend down" in (failed.error or "")
    assert invalid.status == "error"


def test_langchain_export_keeps_schema() -> None:
    tools = _registry().as_langchain_tools()

    assert [tool.name for tool in tools] == ["echo"]
    assert tools[0].args_schema is EchoInput
