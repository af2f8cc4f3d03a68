"""
Protocol capability interfaces. Thin interfaces for the external DEX and
lending programs the pipeline understands.

Price fetching, position decoding and instruction encoding are protocol
specific and live in adapter implementations. Any adapter satisfying these
protocols plugs into classification and execution with zero changes to
scanner/executor code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Protocol, runtime_checkable

from scanner.models import (
    ExecutionStep,
    Instruction,
    LendingPosition,
    ProgramInteraction,
    ProtocolFamily,
    VenueQuote,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class DexAdapter(Protocol):
    """Minimal interface for a trading venue."""

    @property
    def venue(self) -> str:
        """Short identifier: 'orca', 'raydium', etc."""
        ...

    async def pairs_for(self, interaction: ProgramInteraction) -> list[str]:
        """Asset pairs (e.g. 'SOL/USDC') touched by an instruction on this venue."""
        ...

    async def quote(self, pair: str) -> VenueQuote | None:
        """Current price and liquidity for a pair, or None if not listed."""
        ...

    def build_swap(self, step: ExecutionStep) -> Instruction:
        """Encode one swap step as a program instruction."""
        ...


@runtime_checkable
class LendingAdapter(Protocol):
    """Minimal interface for a lending protocol."""

    @property
    def protocol(self) -> str:
        """Short identifier: 'solend', 'mango', etc."""
        ...

    async def positions_for(self, interaction: ProgramInteraction) -> list[LendingPosition]:
        """Current state of the positions touched by an instruction."""
        ...

    def build_liquidation(self, step: ExecutionStep) -> list[Instruction]:
        """Encode the instruction set that liquidates step.position."""
        ...


@dataclass(frozen=True)
class KnownProgram:
    name: str
    program_id: str
    family: ProtocolFamily


class ProtocolRegistry:
    """
    Lookup table from program id to protocol, plus the adapters that speak
    each protocol. Read-only after construction.
    """

    def __init__(
        self,
        dex_programs: Mapping[str, str],
        lending_programs: Mapping[str, str],
        dex_adapters: Mapping[str, DexAdapter] | None = None,
        lending_adapters: Mapping[str, LendingAdapter] | None = None,
    ) -> None:
        self._by_program: dict[str, KnownProgram] = {}
        for name, program_id in dex_programs.items():
            self._by_program[program_id] = KnownProgram(name, program_id, ProtocolFamily.DEX)
        for name, program_id in lending_programs.items():
            self._by_program[program_id] = KnownProgram(name, program_id, ProtocolFamily.LENDING)
        self._dex_adapters = dict(dex_adapters or {})
        self._lending_adapters = dict(lending_adapters or {})

        for name in self._dex_adapters:
            if name not in dex_programs:
                logger.warning("DEX adapter '%s' has no configured program id", name)
        for name in self._lending_adapters:
            if name not in lending_programs:
                logger.warning("Lending adapter '%s' has no configured program id", name)

    @classmethod
    def from_config(cls, cfg, adapters: Mapping[str, object] | None = None) -> ProtocolRegistry:
        """Split a flat name -> adapter mapping by capability."""
        dex: dict[str, DexAdapter] = {}
        lending: dict[str, LendingAdapter] = {}
        for name, adapter in (adapters or {}).items():
            if isinstance(adapter, DexAdapter):
                dex[name] = adapter
            elif isinstance(adapter, LendingAdapter):
                lending[name] = adapter
            else:
                raise TypeError(f"Adapter '{name}' implements neither DexAdapter nor LendingAdapter")
        return cls(cfg.dex_programs, cfg.lending_programs, dex, lending)

    def lookup(self, program_id: str) -> KnownProgram | None:
        return self._by_program.get(program_id)

    def dex_adapter(self, name: str) -> DexAdapter | None:
        return self._dex_adapters.get(name)

    def lending_adapter(self, name: str) -> LendingAdapter | None:
        return self._lending_adapters.get(name)

    @property
    def dex_adapters(self) -> dict[str, DexAdapter]:
        return dict(self._dex_adapters)

    @property
    def known_programs(self) -> list[KnownProgram]:
        return list(self._by_program.values())
