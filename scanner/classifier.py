"""
Transaction classifier. Matches a transaction's program interactions against
the known-protocol table and turns the matches into candidate opportunities:

  - DEX matches: price divergence for the same pair across venues -> ARBITRAGE
  - Lending matches: positions below their liquidation line -> LIQUIDATION

Candidates that miss the liquidity or profit bar are dropped silently. That is
the normal result of continuous scanning, not an error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping

from scanner.features import (
    SuccessRateTracker,
    arbitrage_features,
    estimate_execution_time,
    liquidation_features,
)
from scanner.models import (
    ExecutionStep,
    LendingPosition,
    Opportunity,
    OpportunityType,
    ProgramInteraction,
    ProtocolFamily,
    Side,
    StepAction,
    TransactionDetail,
    VenueQuote,
)
from scanner.protocols import KnownProgram, ProtocolRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgramMatch:
    program: KnownProgram
    interaction: ProgramInteraction


@dataclass(frozen=True)
class Classification:
    """Known-protocol interactions of one transaction, grouped by family."""
    event_id: str
    dex: tuple[ProgramMatch, ...] = ()
    lending: tuple[ProgramMatch, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.dex and not self.lending


@dataclass
class ClassifierParams:
    min_profit: float = 0.05
    min_liquidity: float = 1000.0
    max_position_size: float = 1000.0
    gas_buffer: float = 0.002
    price_impact_limit: float = 0.01
    slippage_tolerance: float = 0.005
    slot_time_sec: float = 0.4
    block_time_buffer_sec: float = 2.0
    venue_min_profit: Mapping[str, float] = field(default_factory=dict)
    venue_min_liquidity: Mapping[str, float] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg) -> ClassifierParams:
        return cls(
            min_profit=cfg.min_profit_threshold,
            min_liquidity=cfg.min_liquidity_requirement,
            max_position_size=cfg.max_position_size,
            gas_buffer=cfg.gas_buffer,
            price_impact_limit=cfg.price_impact_limit,
            slippage_tolerance=cfg.slippage_tolerance,
            slot_time_sec=cfg.slot_time_sec,
            block_time_buffer_sec=cfg.block_time_buffer_sec,
            venue_min_profit=dict(cfg.venue_min_profit),
            venue_min_liquidity=dict(cfg.venue_min_liquidity),
        )

    def profit_bar(self, venue: str) -> float:
        return self.venue_min_profit.get(venue, self.min_profit)

    def liquidity_bar(self, venue: str) -> float:
        return self.venue_min_liquidity.get(venue, self.min_liquidity)


def find_interactions(detail: TransactionDetail, registry: ProtocolRegistry) -> Classification:
    """Group a transaction's instructions (outer and inner) by protocol family."""
    dex: list[ProgramMatch] = []
    lending: list[ProgramMatch] = []
    for interaction in detail.interactions:
        program = registry.lookup(interaction.program_id)
        if program is None:
            continue
        match = ProgramMatch(program=program, interaction=interaction)
        if program.family == ProtocolFamily.DEX:
            dex.append(match)
        else:
            lending.append(match)
    return Classification(event_id=detail.signature, dex=tuple(dex), lending=tuple(lending))


class OpportunityClassifier:
    """
    Turns classified transactions into opportunities using the registered
    protocol adapters. Adapter faults are logged per interaction and never
    abort the rest of the transaction.
    """

    def __init__(
        self,
        registry: ProtocolRegistry,
        params: ClassifierParams | None = None,
        success_rates: SuccessRateTracker | None = None,
    ) -> None:
        self._registry = registry
        self._params = params or ClassifierParams()
        self._success = success_rates or SuccessRateTracker()

    def classify(self, detail: TransactionDetail) -> Classification:
        return find_interactions(detail, self._registry)

    async def find_opportunities(self, classification: Classification) -> list[Opportunity]:
        """Evaluate a classification against current venue and position state."""
        opportunities: list[Opportunity] = []
        if classification.dex:
            opportunities.extend(await self._find_arbitrage(classification))
        if classification.lending:
            opportunities.extend(await self._find_liquidations(classification))
        return opportunities

    # -- Arbitrage --

    async def _find_arbitrage(self, classification: Classification) -> list[Opportunity]:
        pairs: list[str] = []
        for match in classification.dex:
            adapter = self._registry.dex_adapter(match.program.name)
            if adapter is None:
                logger.debug("No adapter for DEX %s, skipping interaction", match.program.name)
                continue
            try:
                touched = await adapter.pairs_for(match.interaction)
            except Exception as e:
                logger.warning("Pair lookup failed on %s for %s: %s", match.program.name, classification.event_id, e)
                continue
            for pair in touched:
                if pair not in pairs:
                    pairs.append(pair)

        opportunities: list[Opportunity] = []
        for pair in pairs:
            quotes = await self._collect_quotes(pair)
            opp = self._best_arbitrage(classification.event_id, pair, quotes)
            if opp is not None:
                opportunities.append(opp)
        return opportunities

    async def _collect_quotes(self, pair: str) -> list[VenueQuote]:
        adapters = self._registry.dex_adapters
        names = list(adapters)
        results = await asyncio.gather(
            *(adapters[name].quote(pair) for name in names),
            return_exceptions=True,
        )
        quotes: list[VenueQuote] = []
        for name, res in zip(names, results):
            if isinstance(res, Exception):
                logger.warning("Quote for %s on %s failed: %s", pair, name, res)
                continue
            if res is None or res.price <= 0:
                continue
            if res.liquidity < self._params.liquidity_bar(res.venue):
                logger.debug("Ignoring %s quote on %s: liquidity %.1f below bar", pair, res.venue, res.liquidity)
                continue
            quotes.append(res)
        return quotes

    def _best_arbitrage(self, event_id: str, pair: str, quotes: list[VenueQuote]) -> Opportunity | None:
        if len({q.venue for q in quotes}) < 2:
            return None
        buy = min(quotes, key=lambda q: q.price)
        sell = max(quotes, key=lambda q: q.price)
        if buy.venue == sell.venue or sell.price <= buy.price:
            return None

        p = self._params
        spread = (sell.price - buy.price) / buy.price
        size = min(p.max_position_size, min(buy.liquidity, sell.liquidity) * p.price_impact_limit)
        profit = size * (spread - 2 * p.slippage_tolerance) - p.gas_buffer
        bar = max(p.profit_bar(buy.venue), p.profit_bar(sell.venue))
        if profit <= bar:
            logger.debug("Arbitrage miss on %s: profit %.4f <= bar %.4f", pair, profit, bar)
            return None

        path = (
            ExecutionStep(
                venue=buy.venue,
                program_id=self._program_id(buy.venue),
                action=StepAction.SWAP,
                pair=pair,
                side=Side.BUY,
                amount=size,
                limit_price=buy.price * (1.0 + p.slippage_tolerance),
                accounts=(buy.pool_address,) if buy.pool_address else (),
            ),
            ExecutionStep(
                venue=sell.venue,
                program_id=self._program_id(sell.venue),
                action=StepAction.SWAP,
                pair=pair,
                side=Side.SELL,
                amount=size,
                limit_price=sell.price * (1.0 - p.slippage_tolerance),
                accounts=(sell.pool_address,) if sell.pool_address else (),
            ),
        )
        venues = (buy.venue, sell.venue)
        features = arbitrage_features(
            buy,
            sell,
            success_rate=self._success.rate(OpportunityType.ARBITRAGE, venues),
            gas_estimate=p.gas_buffer,
            execution_time=estimate_execution_time(len(path), p.slot_time_sec, p.block_time_buffer_sec),
            n_steps=len(path),
        )
        logger.debug(
            "Arbitrage on %s: buy %s@%.6f sell %s@%.6f size=%.2f profit=%.4f",
            pair, buy.venue, buy.price, sell.venue, sell.price, size, profit,
        )
        return Opportunity(
            id=f"{event_id}:{OpportunityType.ARBITRAGE.value}:{pair}",
            type=OpportunityType.ARBITRAGE,
            event_id=event_id,
            features=features,
            estimated_profit=profit,
            position_size=size,
            execution_path=path,
            venues=venues,
        )

    # -- Liquidation --

    async def _find_liquidations(self, classification: Classification) -> list[Opportunity]:
        opportunities: list[Opportunity] = []
        seen: set[str] = set()
        for match in classification.lending:
            adapter = self._registry.lending_adapter(match.program.name)
            if adapter is None:
                logger.debug("No adapter for lending protocol %s, skipping", match.program.name)
                continue
            try:
                positions = await adapter.positions_for(match.interaction)
            except Exception as e:
                logger.warning(
                    "Position lookup failed on %s for %s: %s",
                    match.program.name, classification.event_id, e,
                )
                continue
            for position in positions:
                if position.address in seen:
                    continue
                seen.add(position.address)
                opp = self._liquidation(classification.event_id, match.program, position)
                if opp is not None:
                    opportunities.append(opp)
        return opportunities

    def _liquidation(
        self, event_id: str, program: KnownProgram, position: LendingPosition,
    ) -> Opportunity | None:
        if not position.is_liquidatable:
            return None
        p = self._params
        if position.collateral_value < p.liquidity_bar(program.name):
            logger.debug("Liquidation miss on %s: collateral below liquidity bar", position.address)
            return None
        repay = min(position.debt_value * position.close_factor, p.max_position_size)
        profit = repay * position.liquidation_bonus - p.gas_buffer
        bar = p.profit_bar(program.name)
        if profit <= bar:
            logger.debug("Liquidation miss on %s: profit %.4f <= bar %.4f", position.address, profit, bar)
            return None

        path = (
            ExecutionStep(
                venue=program.name,
                program_id=program.program_id,
                action=StepAction.LIQUIDATE,
                amount=repay,
                accounts=(position.address, position.owner),
                position=position,
            ),
        )
        venues = (program.name,)
        features = liquidation_features(
            position,
            success_rate=self._success.rate(OpportunityType.LIQUIDATION, venues),
            gas_estimate=p.gas_buffer,
            execution_time=estimate_execution_time(len(path), p.slot_time_sec, p.block_time_buffer_sec),
            n_steps=len(path),
        )
        logger.debug(
            "Liquidation on %s %s: health=%.3f repay=%.2f profit=%.4f",
            program.name, position.address, position.health_factor, repay, profit,
        )
        return Opportunity(
            id=f"{event_id}:{OpportunityType.LIQUIDATION.value}:{position.address}",
            type=OpportunityType.LIQUIDATION,
            event_id=event_id,
            features=features,
            estimated_profit=profit,
            position_size=repay,
            execution_path=path,
            venues=venues,
        )

    def _program_id(self, venue: str) -> str:
        for program in self._registry.known_programs:
            if program.name == venue:
                return program.program_id
        return ""
