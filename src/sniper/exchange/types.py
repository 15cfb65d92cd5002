"""Exchange quantization helpers.

All values use Decimal. Never use float for prices or quantities.
"""

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal


def round_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round a value down to the nearest step increment.

    Uses integer division to ensure we always round DOWN (never up),
    which prevents exceeding available balance. The result carries the
    step's precision, so Decimal("45") with step 0.01 becomes 45.00.

    Args:
        value: The raw quantity to round.
        step: The minimum increment (e.g., 0.001 for BTC).

    Returns:
        The value rounded down to the nearest step, never negative.
    """
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    if value <= 0:
        return Decimal("0").quantize(step)
    return ((value // step) * step).quantize(step)


def round_to_tick(value: Decimal, tick: Decimal, *, up: bool) -> Decimal:
    """Round a price to a multiple of tick, up (ceiling) or down (floor)."""
    if tick <= 0:
        raise ValueError(f"tick must be positive, got {tick}")
    units = (value / tick).to_integral_value(rounding=ROUND_CEILING if up else ROUND_FLOOR)
    return (units * tick).quantize(tick)


def format_decimal(value: Decimal) -> str:
    """Render a Decimal in plain notation for an exchange request."""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
