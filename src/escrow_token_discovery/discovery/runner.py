"""Escrow token discovery runner.

This module implements the `discover` command:
- Register catalog escrows as scan scopes (and prune removed ones)
- For each escrow, sequentially: scan `Transfer` logs into it from the
  resume height to the chain head, refresh balances, commit
- Enrich every tracked token with market data once
- Rank, filter and write the JSON report
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from redis.asyncio import Redis

from escrow_token_discovery.catalog import Escrow, load_catalog
from escrow_token_discovery.chain.client import ChainClient
from escrow_token_discovery.chain.explorer import BlockExplorerClient, BlockLowerBound
from escrow_token_discovery.config import Settings
from escrow_token_discovery.discovery.accumulator import EscrowTokenAccumulator
from escrow_token_discovery.discovery.checkpoints import CheckpointStore
from escrow_token_discovery.http import HttpClient
from escrow_token_discovery.market.coingecko import CoingeckoClient, TokenIdentityLookup
from escrow_token_discovery.market.enricher import MarketEnricher
from escrow_token_discovery.ratelimit import RateLimiter
from escrow_token_discovery.report.ranking import RankedToken, finalize, write_report
from escrow_token_discovery.scan.limits import RangeLimitClassifier
from escrow_token_discovery.scan.log_scanner import LogScanner, LogSource, transfers_to_topics
from escrow_token_discovery.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class DiscoveryError(RuntimeError):
    pass


class ChainHead(LogSource, Protocol):
    async def get_block_number(self) -> int: ...


@dataclass(frozen=True)
class ScopeResult:
    escrow: Escrow
    from_block: int
    to_block: int
    logs: int
    committed_height: int


@dataclass(frozen=True)
class DiscoveryResult:
    scopes: list[ScopeResult]
    tokens_tracked: int
    ranked: list[RankedToken]
    output_path: Path | None = None


@dataclass
class DiscoveryRunner:
    """Drives scopes one at a time, then enriches and ranks."""

    checkpoints: CheckpointStore
    accumulator: EscrowTokenAccumulator
    chains: Mapping[str, ChainHead]
    enricher: MarketEnricher
    min_market_cap: Decimal
    min_missing_value: Decimal
    _heads: dict[str, int] = field(default_factory=dict, init=False)

    async def _head(self, chain: str) -> int:
        # One head per chain per run, shared by all of its escrows.
        if chain not in self._heads:
            self._heads[chain] = await self.chains[chain].get_block_number()
        return self._heads[chain]

    async def scan_escrow(self, escrow: Escrow) -> ScopeResult:
        if escrow.chain not in self.chains:
            raise DiscoveryError(f"No RPC client configured for chain {escrow.chain!r}")

        head = await self._head(escrow.chain)
        from_block = await self.checkpoints.get_resume_height(escrow)
        scanner = LogScanner(self.chains[escrow.chain])
        logs = await scanner.scan(transfers_to_topics(escrow.address), from_block, head)
        logger.info(
            "Processed blocks %d-%d on %s, found %d logs for escrow %s",
            from_block,
            head,
            escrow.chain,
            len(logs),
            escrow.address,
        )

        await self.accumulator.ingest(escrow, logs)
        committed = await self.checkpoints.commit(escrow, head, self.accumulator)
        return ScopeResult(
            escrow=escrow,
            from_block=from_block,
            to_block=head,
            logs=len(logs),
            committed_height=committed,
        )

    async def run(self, escrows: Sequence[Escrow]) -> DiscoveryResult:
        scopes = []
        for i, escrow in enumerate(escrows, start=1):
            logger.info("Checking logs for escrow %s on %s (%d/%d)", escrow.address, escrow.chain, i, len(escrows))
            scopes.append(await self.scan_escrow(escrow))
            logger.info("Tracked tokens: %d", len(self.accumulator.tokens))

        tokens = list(self.accumulator.tokens.values())
        market_data = await self.enricher.enrich(tokens)
        ranked = finalize(
            tokens,
            market_data,
            min_market_cap=self.min_market_cap,
            min_missing_value=self.min_missing_value,
        )
        return DiscoveryResult(scopes=scopes, tokens_tracked=len(tokens), ranked=ranked)


async def run_discovery(
    *,
    settings: Settings,
    catalog_path: Path | None = None,
    output_path: Path | None = None,
) -> DiscoveryResult:
    settings.validate_requirements(command="discover")
    catalog = load_catalog(catalog_path or settings.discovery.catalog_path).for_chains(settings.discovery.chains)
    output_path = output_path or settings.discovery.output_path

    chains_needed = sorted({e.chain for e in catalog.escrows})
    missing = [c for c in chains_needed if c not in settings.chain.rpc_urls]
    if missing:
        raise DiscoveryError(f"CHAIN_RPC_URLS has no entry for: {', '.join(missing)}")

    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    db = DatabaseManager(settings.database.url)
    classifier = RangeLimitClassifier().with_signatures(settings.chain.extra_range_limit_signatures)

    chain_clients: dict[str, ChainClient] = {}
    http_clients: list[HttpClient] = []
    try:
        lower_bounds: dict[str, BlockLowerBound] = {}
        for chain in chains_needed:
            client = ChainClient(
                chain,
                rpc_url=settings.chain.rpc_urls[chain],
                fallback_rpc_url=settings.chain.fallback_rpc_urls.get(chain),
                redis=redis,
                max_requests_per_second=settings.chain.max_requests_per_second,
                max_retries=settings.chain.max_retries,
                retry_delay_seconds=settings.chain.retry_delay_seconds,
                range_limit_classifier=classifier,
            )
            chain_clients[chain] = client

            explorer = settings.explorer.for_chain(chain)
            if explorer is None:
                logger.info("No explorer configured for %s; resolving start blocks over RPC", chain)
                lower_bounds[chain] = client
                continue
            api_url, api_key = explorer
            explorer_http = HttpClient(rate_limiter=RateLimiter.per_minute(settings.explorer.calls_per_minute))
            http_clients.append(explorer_http)
            lower_bounds[chain] = BlockExplorerClient(explorer_http, chain=chain, api_url=api_url, api_key=api_key)

        coingecko_http = HttpClient(rate_limiter=RateLimiter.per_minute(settings.coingecko.calls_per_minute))
        http_clients.append(coingecko_http)
        coingecko = CoingeckoClient(
            coingecko_http,
            base_url=settings.coingecko.base_url,
            api_key=settings.coingecko.api_key.get_secret_value() if settings.coingecko.api_key else None,
        )
        identities = await TokenIdentityLookup.load(coingecko)

        checkpoints = CheckpointStore(
            db,
            indexer_id=settings.discovery.indexer_id,
            lower_bounds=lower_bounds,
            batch_size=settings.discovery.configuration_batch_size,
        )
        accumulator = EscrowTokenAccumulator(
            readers=dict(chain_clients),
            identities=identities,
            known_tokens=catalog.known_tokens,
        )
        await checkpoints.load_into(accumulator)
        await checkpoints.sync_scopes(catalog.escrows)

        runner = DiscoveryRunner(
            checkpoints=checkpoints,
            accumulator=accumulator,
            chains=chain_clients,
            enricher=MarketEnricher(coingecko, batch_size=settings.coingecko.markets_batch_size),
            min_market_cap=settings.discovery.min_market_cap,
            min_missing_value=settings.discovery.min_missing_value,
        )
        result = await runner.run(catalog.escrows)
        write_report(output_path, result.ranked)
        return DiscoveryResult(
            scopes=result.scopes,
            tokens_tracked=result.tokens_tracked,
            ranked=result.ranked,
            output_path=output_path,
        )
    finally:
        for client in chain_clients.values():
            await client.aclose()
        for http in http_clients:
            await http.aclose()
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()
