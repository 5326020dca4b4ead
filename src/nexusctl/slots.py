"""Slot allocation and the container naming convention."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .providers.base import ContainerRuntime


def allocate_next_slot(existing: Iterable[int]) -> int:
    """Return one past the highest slot in *existing*, or ``1`` when empty."""
    return max(existing, default=0) + 1


def handle_name(prefix: str, slot: int) -> str:
    """Return the container name for *slot*."""
    if slot < 1:
        raise ValueError(f"Slot index must be positive, got {slot}.")
    return f"{prefix}{slot}"


def slot_from_name(prefix: str, name: str) -> int | None:
    """Return the slot encoded in *name*, or ``None`` if it does not follow the convention."""
    if not name.startswith(prefix):
        return None
    suffix = name[len(prefix) :]
    if not suffix.isascii() or not suffix.isdigit():
        return None
    slot = int(suffix)
    return slot if slot >= 1 else None


@dataclass(slots=True)
class SlotAllocator:
    """Derive slots from live runtime state; nothing is cached between calls."""

    runtime: ContainerRuntime
    prefix: str

    def live_slots(self) -> dict[int, str]:
        """Return ``{slot: container name}`` for every container following the convention."""
        slots: dict[int, str] = {}
        for summary in self.runtime.list(self.prefix):
            slot = slot_from_name(self.prefix, summary.name)
            if slot is not None:
                slots[slot] = summary.name
        return slots

    def next_slot(self) -> int:
        """Return the next slot after the highest one currently held."""
        return allocate_next_slot(self.live_slots())


__all__ = ["SlotAllocator", "allocate_next_slot", "handle_name", "slot_from_name"]
