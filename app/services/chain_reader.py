"""
Read-only accessor over the on-chain voting ledger.

Every read is pure and retried with exponential backoff. Failures that
survive all retries surface as TransportError.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from web3 import AsyncWeb3

from app.core.config import settings, ChainConfig
from app.core.exceptions import TransportError


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SeasonInfo:
    """Season metadata as reported by the voting ledger."""
    season_number: int
    start_time: datetime
    end_time: datetime
    finalized: bool
    total_votes: int

    def has_ended(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now > self.end_time


class ChainReader:
    """
    Voting ledger reader backed by an EVM contract.

    The contract exposes getCurrentSeason, getSeasonInfo, getLeaderboard and
    getEvermarkVotesInSeason and emits VoteCast per vote. A season is
    considered finalized once the ledger no longer reports it as active.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None
    ):
        self.logger = logger.bind(service="chain_reader")

        self.rpc_url = rpc_url or settings.chain_rpc_url
        self.contract_address = contract_address or settings.voting_contract_address
        self.max_retries = max_retries or settings.chain_read_max_retries
        self.retry_delay = settings.chain_read_retry_delay if retry_delay is None else retry_delay
        self.timeout = timeout or settings.chain_request_timeout
        self.start_block = settings.voting_start_block
        self.log_block_range = settings.chain_log_block_range

        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout})
        )
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.contract_address),
            abi=ChainConfig.VOTING_ABI
        )

    async def _read(self, method: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a contract read with timeout and exponential backoff."""
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                result = await asyncio.wait_for(call(), timeout=self.timeout)

                if attempt > 0:
                    self.logger.info("Chain read succeeded after retries", method=method, attempt=attempt + 1)

                return result

            except Exception as e:
                last_exception = e
                self.logger.warning(
                    "Chain read failed",
                    method=method,
                    attempt=attempt + 1,
                    error=str(e) or type(e).__name__
                )

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))

        self.logger.error("All chain read attempts failed", method=method, max_retries=self.max_retries)

        raise TransportError(
            f"Chain read {method} failed after {self.max_retries} attempts",
            {"method": method, "last_error": str(last_exception)}
        )

    async def get_current_season(self) -> int:
        result = await self._read(
            "getCurrentSeason",
            lambda: self.contract.functions.getCurrentSeason().call()
        )
        return int(result)

    async def get_season_info(self, season_number: int) -> SeasonInfo:
        start_time, end_time, active, total_votes = await self._read(
            "getSeasonInfo",
            lambda: self.contract.functions.getSeasonInfo(season_number).call()
        )
        return SeasonInfo(
            season_number=season_number,
            start_time=datetime.fromtimestamp(int(start_time), tz=timezone.utc),
            end_time=datetime.fromtimestamp(int(end_time), tz=timezone.utc),
            finalized=not active,
            total_votes=int(total_votes)
        )

    async def get_leaderboard(self, season_number: int) -> List[Tuple[int, int]]:
        """Leaderboard as (content_id, votes) pairs, in ledger order."""
        rows = await self._read(
            "getLeaderboard",
            lambda: self.contract.functions.getLeaderboard(season_number).call()
        )
        return [(int(content_id), int(votes)) for content_id, votes in rows]

    async def get_votes_for_content(self, season_number: int, content_id: int) -> int:
        result = await self._read(
            "getEvermarkVotesInSeason",
            lambda: self.contract.functions.getEvermarkVotesInSeason(season_number, content_id).call()
        )
        return int(result)

    async def get_voter_votes(self, season_number: int) -> List[Tuple[int, str, int]]:
        """
        Per-voter votes for a season, summed from VoteCast logs.

        Logs are fetched in fixed block ranges from voting_start_block to the
        chain head. Voter addresses are lower-cased.

        Returns:
            (content_id, voter_address, votes) tuples ordered by content and voter
        """
        latest = await self._read("blockNumber", lambda: self.w3.eth.get_block_number())

        totals: Dict[Tuple[int, str], int] = {}
        log_count = 0
        from_block = self.start_block

        while from_block <= latest:
            to_block = min(from_block + self.log_block_range - 1, latest)
            logs = await self._read(
                "VoteCast",
                lambda start=from_block, end=to_block: self.contract.events.VoteCast.get_logs(
                    argument_filters={"season": season_number},
                    from_block=start,
                    to_block=end
                )
            )

            for log in logs:
                args = log["args"]
                key = (int(args["evermarkId"]), args["voter"].lower())
                totals[key] = totals.get(key, 0) + int(args["votes"])
            log_count += len(logs)
            from_block = to_block + 1

        self.logger.info(
            "Vote logs read",
            season_number=season_number,
            logs=log_count,
            voter_entries=len(totals)
        )
        return [(content_id, voter, votes) for (content_id, voter), votes in sorted(totals.items())]


# Global instance
_chain_reader: Optional[ChainReader] = None


async def get_chain_reader() -> ChainReader:
    """Get or create global ChainReader instance."""
    global _chain_reader
    if _chain_reader is None:
        _chain_reader = ChainReader()
    return _chain_reader
