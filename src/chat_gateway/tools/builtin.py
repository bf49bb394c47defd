"""
Tools executed in-process.

Each built-in takes the call arguments and returns a JSON-serializable
result, the same contract remote tool endpoints follow.
"""

import logging
from typing import Any, Awaitable, Callable, Dict

import httpx

from ..core.errors import ToolExecutionError

logger = logging.getLogger(__name__)

FRANKFURTER_URL = "https://api.frankfurter.app/latest"

# Factors to the base unit of each category (meter, gram, liter)
UNIT_FACTORS: Dict[str, Dict[str, float]] = {
    "length": {
        "m": 1, "meter": 1, "meters": 1,
        "cm": 0.01, "centimeter": 0.01, "centimeters": 0.01,
        "mm": 0.001, "millimeter": 0.001, "millimeters": 0.001,
        "km": 1000, "kilometer": 1000, "kilometers": 1000,
        "in": 0.0254, "inch": 0.0254, "inches": 0.0254,
        "ft": 0.3048, "foot": 0.3048, "feet": 0.3048,
        "yd": 0.9144, "yard": 0.9144, "yards": 0.9144,
        "mi": 1609.344, "mile": 1609.344, "miles": 1609.344,
    },
    "weight": {
        "g": 1, "gram": 1, "grams": 1,
        "kg": 1000, "kilogram": 1000, "kilograms": 1000,
        "mg": 0.001, "milligram": 0.001, "milligrams": 0.001,
        "oz": 28.3495, "ounce": 28.3495, "ounces": 28.3495,
        "lb": 453.592, "lbs": 453.592, "pound": 453.592, "pounds": 453.592,
    },
    "volume": {
        "l": 1, "liter": 1, "liters": 1,
        "ml": 0.001, "milliliter": 0.001, "milliliters": 0.001,
        "gal": 3.78541, "gallon": 3.78541, "gallons": 3.78541,
        "qt": 0.946353, "quart": 0.946353, "quarts": 0.946353,
        "pt": 0.473176, "pint": 0.473176, "pints": 0.473176,
        "cup": 0.236588, "cups": 0.236588,
        "floz": 0.0295735, "fl oz": 0.0295735,
        "fluid ounce": 0.0295735, "fluid ounces": 0.0295735,
    },
}

TEMPERATURE_UNITS = {
    "c": "celsius", "celsius": "celsius",
    "f": "fahrenheit", "fahrenheit": "fahrenheit",
    "k": "kelvin", "kelvin": "kelvin",
}

LocalTool = Callable[[Dict[str, Any]], Awaitable[Any]]


def _to_celsius(amount: float, unit: str) -> float:
    if unit == "fahrenheit":
        return (amount - 32) * 5 / 9
    if unit == "kelvin":
        return amount - 273.15
    return amount


def _from_celsius(celsius: float, unit: str) -> float:
    if unit == "fahrenheit":
        return celsius * 9 / 5 + 32
    if unit == "kelvin":
        return celsius + 273.15
    return celsius


def convert_units(amount: float, source: str, target: str) -> Dict[str, Any]:
    """
    Convert between length, weight, volume or temperature units.

    Raises:
        ToolExecutionError: Units unknown or from different categories
    """
    from_unit = source.lower().strip()
    to_unit = target.lower().strip()

    for category, factors in UNIT_FACTORS.items():
        if from_unit in factors and to_unit in factors:
            rate = factors[from_unit] / factors[to_unit]
            converted = round(amount * rate, 5)
            return {
                "original_amount": amount,
                "original_unit": source,
                "converted_amount": converted,
                "converted_unit": target,
                "conversion_rate": rate,
                "conversion_type": category,
                "message": f"{amount} {source} = {converted} {target}",
            }

    if from_unit in TEMPERATURE_UNITS and to_unit in TEMPERATURE_UNITS:
        celsius = _to_celsius(amount, TEMPERATURE_UNITS[from_unit])
        converted = round(_from_celsius(celsius, TEMPERATURE_UNITS[to_unit]), 2)
        return {
            "original_amount": amount,
            "original_unit": source,
            "converted_amount": converted,
            "converted_unit": target,
            "conversion_rate": converted / amount if amount else None,
            "conversion_type": "temperature",
            "message": f"{amount}°{source.upper()} = {converted}°{target.upper()}",
        }

    raise ToolExecutionError(f"Unsupported unit conversion: {source} to {target}")


async def convert_currency(
    amount: float,
    source: str,
    target: str,
    client: httpx.AsyncClient,
) -> Dict[str, Any]:
    """Convert currencies with the public Frankfurter exchange-rate API."""
    from_currency = source.upper()
    to_currency = target.upper()

    try:
        response = await client.get(
            FRANKFURTER_URL,
            params={"base": from_currency, "symbols": to_currency},
        )
    except httpx.RequestError as e:
        raise ToolExecutionError(f"Failed to convert currency: {e}")

    if response.status_code != 200:
        raise ToolExecutionError(
            f"Exchange rate API error ({response.status_code}): {response.text[:200]}"
        )

    data = response.json()
    rate = (data.get("rates") or {}).get(to_currency)
    if rate is None:
        raise ToolExecutionError(
            f"Currency conversion not available for {from_currency} to {to_currency}"
        )

    converted = round(amount * rate, 2)
    return {
        "original_amount": amount,
        "original_unit": from_currency,
        "converted_amount": converted,
        "converted_unit": to_currency,
        "conversion_rate": round(rate, 6),
        "conversion_type": "currency",
        "timestamp": data.get("date"),
        "message": f"{amount} {from_currency} = {converted} {to_currency} (Rate: {rate})",
    }


def make_convert_tool(client: httpx.AsyncClient) -> LocalTool:
    """The `convert` tool: {amount, from, to, type: currency|unit}."""

    async def convert(args: Dict[str, Any]) -> Dict[str, Any]:
        amount = args.get("amount")
        source = args.get("from")
        target = args.get("to")
        if not isinstance(amount, (int, float)) or isinstance(amount, bool):
            raise ToolExecutionError("amount must be a number")
        if not source or not target:
            raise ToolExecutionError("from and to are required")

        if args.get("type", "currency") == "currency":
            return await convert_currency(float(amount), source, target, client)
        return convert_units(float(amount), source, target)

    return convert
