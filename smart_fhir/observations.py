"""
Helpers for working with Observation resources.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .exceptions import UnitConversionError


def by_code(
    observations: Iterable[Mapping[str, Any]] | Mapping[str, Any],
    property: str = "code",
) -> dict[str, list[Mapping[str, Any]]]:
    """
    Group observations by the codes of `property` (a CodeableConcept).

    An observation with several codings appears under each of its codes.
    """
    if isinstance(observations, Mapping):
        observations = [observations]
    grouped: dict[str, list[Mapping[str, Any]]] = {}
    for observation in observations:
        if observation.get("resourceType") != "Observation":
            continue
        concept = observation.get(property)
        if not isinstance(concept, Mapping):
            continue
        codings = concept.get("coding")
        if not isinstance(codings, list):
            continue
        for coding in codings:
            grouped.setdefault(coding.get("code"), []).append(observation)
    return grouped


def by_codes(
    observations: Iterable[Mapping[str, Any]] | Mapping[str, Any],
    property: str = "code",
) -> Callable[..., list[Mapping[str, Any]]]:
    """
    Return a lookup that collects observations for any number of codes.

        lookup = by_codes(observations)
        lookup("8480-6", "8462-4")
    """
    bank = by_code(observations, property)

    def lookup(*codes: str) -> list[Mapping[str, Any]]:
        matched: list[Mapping[str, Any]] = []
        for code in codes:
            matched.extend(bank.get(code, []))
        return matched

    return lookup


_LENGTH_TO_CM = {"cm": 1.0, "m": 100.0, "in": 2.54, "[in_us]": 2.54, "[in_i]": 2.54}
_MASS_TO_KG = {"kg": 1.0, "g": 0.001, "lb": 0.45359237, "[lb_av]": 0.45359237}


class _Units:
    """Quantity converters (UCUM codes)."""

    def cm(self, quantity: Mapping[str, Any]) -> float:
        factor = _LENGTH_TO_CM.get(quantity.get("code"))
        if factor is None:
            raise UnitConversionError("length", quantity.get("code"))
        return factor * float(quantity["value"])

    def kg(self, quantity: Mapping[str, Any]) -> float:
        factor = _MASS_TO_KG.get(quantity.get("code"))
        if factor is None:
            raise UnitConversionError("weight", quantity.get("code"))
        return factor * float(quantity["value"])

    def any(self, quantity: Mapping[str, Any]) -> Any:
        return quantity.get("value")


units = _Units()
