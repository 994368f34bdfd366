from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Sequence, Tuple, TypeVar

from polygon_proxy.core.errors import StrategiesExhausted
from polygon_proxy.core.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Strategy = Tuple[str, Callable[[], Awaitable[T]]]


@dataclass
class FallbackResult(Generic[T]):
    source: str
    value: T
    skipped: List[Tuple[str, Any]]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    try:
        return len(value) == 0
    except TypeError:
        return False


async def first_available(
    strategies: Sequence[Strategy],
    is_empty: Callable[[Any], bool] = _is_empty,
) -> FallbackResult:
    """
    Run strategies one after another until one yields usable data.

    A strategy that raises, or returns an empty value, hands over to the next.
    The last strategy's value is returned even when empty; if it raises too,
    StrategiesExhausted carries every error in order.

    Returns:
        FallbackResult tagged with the name of the strategy that answered
    """
    if not strategies:
        raise ValueError("at least one strategy is required")

    errors: List[Tuple[str, Exception]] = []
    skipped: List[Tuple[str, Any]] = []
    last_index = len(strategies) - 1

    for index, (name, strategy) in enumerate(strategies):
        try:
            value = await strategy()
        except Exception as e:
            logger.warning(f"⚠️ {name} strategy failed: {e}")
            errors.append((name, e))
            skipped.append((name, e))
            continue

        if index < last_index and is_empty(value):
            logger.info(f"{name} strategy returned no data, falling back")
            skipped.append((name, "empty"))
            continue

        return FallbackResult(source=name, value=value, skipped=skipped)

    raise StrategiesExhausted(errors)
