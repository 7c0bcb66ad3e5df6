from __future__ import annotations

from typing import Final


class InvalidTransitionError(ValueError):
    pass


# Lifecycle of one bin's scan record. Invoice blocking is tracked on the
# invoice itself and gates every transition out of UNSTARTED.
SCAN_TRANSITIONS: Final[dict[str, set[str]]] = {
    "UNSTARTED": {"CUSTOMER_PENDING", "PAIRED", "LOADED"},
    "CUSTOMER_PENDING": {"PAIRED", "ROLLED_BACK"},
    "PAIRED": set(),
    "LOADED": {"REMOVED"},
    "ROLLED_BACK": set(),
    "REMOVED": set(),
}

ALERT_TRANSITIONS: Final[dict[str, set[str]]] = {
    "PENDING": {"APPROVED", "REJECTED"},
    "REJECTED": {"APPROVED"},
    "APPROVED": set(),
}

TERMINAL_ALERT_STATES: Final[set[str]] = {"APPROVED"}


def _check(table: dict[str, set[str]], from_state: str, to_state: str) -> str:
    from_norm = from_state.strip().upper()
    to_norm = to_state.strip().upper()

    if from_norm not in table:
        raise InvalidTransitionError(f"Unknown state: {from_state}")
    if to_norm not in table:
        raise InvalidTransitionError(f"Unknown state: {to_state}")
    if to_norm not in table[from_norm]:
        raise InvalidTransitionError(f"Invalid transition: {from_norm} -> {to_norm}")
    return to_norm


def can_transition_scan(from_state: str, to_state: str) -> bool:
    return to_state.strip().upper() in SCAN_TRANSITIONS.get(from_state.strip().upper(), set())


def transition_scan(from_state: str, to_state: str) -> str:
    return _check(SCAN_TRANSITIONS, from_state, to_state)


def can_transition_alert(from_status: str, to_status: str) -> bool:
    return to_status.strip().upper() in ALERT_TRANSITIONS.get(from_status.strip().upper(), set())


def transition_alert(from_status: str, to_status: str) -> str:
    return _check(ALERT_TRANSITIONS, from_status, to_status).lower()
