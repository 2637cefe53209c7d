import pytest

from bindings.constants import ExpressionMode
from bindings.errors import FieldResolutionError, ScriptRuntimeError, UnknownModeError
from bindings.state import BindingState
from bindings.strategies import EvaluationContext, FieldStrategy, LiteralStrategy, StrategyResolver
from runtime_simulator.data_manager import InMemoryDataStore
from services.faceplate_data_service import FaceplateDataService


def make_context(store, entity_id="pump-1"):
    return EvaluationContext(
        entity_id=entity_id,
        faceplate_id=None,
        store=store,
        service=FaceplateDataService(store),
        state=BindingState(),
    )


@pytest.mark.parametrize(
    "text, found, value",
    [
        ("'hi'", True, "hi"),
        ('"x y"', True, "x y"),
        ("42", True, 42),
        ("-3.5", True, -3.5),
        ("+7", True, 7),
        ("true", True, True),
        ("False", True, False),
        ("null", True, None),
        ("Temperature", False, None),
        ("1.2.3", False, None),
        ("", False, None),
    ],
)
def test_try_evaluate_literal(text, found, value):
    result = LiteralStrategy.try_evaluate_literal(text)
    assert result.found is found
    assert result.value == value


def test_resolver_returns_one_strategy_per_mode():
    resolver = StrategyResolver()
    assert resolver.get(ExpressionMode.FIELD) is resolver.get("field")
    assert resolver.get("twoWay") is resolver.field
    assert resolver.get("script") is resolver.script
    with pytest.raises(UnknownModeError):
        resolver.get("formula")


@pytest.mark.asyncio
async def test_field_strategy_reads_direct_and_indirect_paths(store):
    strategy = FieldStrategy()
    context = make_context(store)
    assert await strategy.evaluate("Temperature", context) == 42
    assert await strategy.evaluate("Motor->Speed", context) == 1450
    assert await strategy.evaluate("Motor -> Name", context) == "Motor A"


@pytest.mark.asyncio
async def test_field_strategy_computes_arithmetic_over_fields(store):
    strategy = FieldStrategy()
    context = make_context(store)
    assert await strategy.evaluate("Temperature * 2 + Motor->Speed", context) == 1534
    # Numeric strings are coerced
    assert await strategy.evaluate("Level + 1", context) == 13.5
    assert await strategy.evaluate("clamp(Temperature, 0, 40)", context) == 40


@pytest.mark.asyncio
async def test_field_strategy_rejects_non_numeric_operands(store):
    with pytest.raises(ScriptRuntimeError, match="not numeric"):
        await FieldStrategy().evaluate("Status + 1", make_context(store))


@pytest.mark.asyncio
async def test_field_strategy_without_entity_yields_none(store):
    assert await FieldStrategy().evaluate("Temperature", make_context(store, entity_id=None)) is None


@pytest.mark.asyncio
async def test_unknown_field_caches_empty_path(caplog):
    store = InMemoryDataStore(schema=["Temperature"])
    store.add_entity("pump-1", {"Temperature": 1})
    strategy = FieldStrategy()
    service = FaceplateDataService(store)

    assert await strategy.get_field_path("Missing", service) == []
    assert "Unable to resolve field type" in caplog.text
    assert strategy._paths["Missing"] == []

    with pytest.raises(FieldResolutionError):
        await strategy.read("Missing", make_context(store))
