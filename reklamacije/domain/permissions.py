from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    OPERATER = "operater"
    SEF = "sef"
    RADNIK = "radnik"
    SERVISER = "serviser"
    RECEPCIONER = "recepcioner"
    MENADZER = "menadzer"
    SYSTEM = "system"


SUPERVISOR_ROLES: frozenset[str] = frozenset({Role.SEF, Role.ADMIN})


def is_supervisor(role: str | None) -> bool:
    return role in SUPERVISOR_ROLES


def can_edit_task_details(role: str | None) -> bool:
    return is_supervisor(role)


def can_delete_task(role: str | None) -> bool:
    return is_supervisor(role)


def can_correct_status(role: str | None) -> bool:
    return is_supervisor(role)
