"""Consensus Engine - Propose, vote and tally on architecturally significant plans."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ultrawork.delegation.models import WorkOrder
from ultrawork.errors import ProposalResolved, QuorumTimeout

logger = logging.getLogger(__name__)

QUORUM_TIMEOUT_REASON = "quorum-timeout"


class ProposalState(StrEnum):
    OPEN = "open"
    TALLYING = "tallying"
    RESOLVED = "resolved"


class Resolution(StrEnum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Proposal:
    """Question put to the review panel."""

    id: str
    question: str
    options: tuple[str, ...] = ("approve", "reject")
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Vote:
    """
    One reviewer's vote. A bool accepts or rejects; a tuple ranks the
    proposal's options and accepts iff its first choice is the first option.
    """

    proposal_id: str
    voter_id: str
    choice: bool | tuple[str, ...]

    def accepts(self, proposal: Proposal) -> bool:
        if isinstance(self.choice, bool):
            return self.choice
        return bool(self.choice) and bool(proposal.options) and self.choice[0] == proposal.options[0]


@dataclass
class ConsensusOutcome:
    """Recorded outcome of a resolved proposal."""

    proposal_id: str
    question: str
    resolution: Resolution
    accepts: int
    rejects: int
    reason: str = ""
    resolved_at: float = field(default_factory=time.time)

    @property
    def accepted(self) -> bool:
        return self.resolution == Resolution.ACCEPTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "question": self.question,
            "resolution": self.resolution.value,
            "accepts": self.accepts,
            "rejects": self.rejects,
            "reason": self.reason,
            "resolved_at": self.resolved_at,
        }


@dataclass
class _ProposalRecord:
    proposal: Proposal
    state: ProposalState = ProposalState.OPEN
    votes: dict[str, Vote] = field(default_factory=dict)
    outcome: ConsensusOutcome | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    resolved: asyncio.Event = field(default_factory=asyncio.Event)


Reviewer = Callable[[Proposal], Awaitable[bool | tuple[str, ...]]]


class ConsensusEngine:
    """
    Runs propose/vote/tally rounds for a fixed-size review panel.

    - Panel size is odd so a full panel cannot tie
    - Quorum defaults to a majority of the panel
    - A proposal resolves irreversibly; later votes raise ProposalResolved
    """

    def __init__(self, panel_size: int = 3, quorum: int | None = None) -> None:
        if panel_size < 1 or panel_size % 2 == 0:
            raise ValueError(f"panel_size must be a positive odd number, got {panel_size}")
        quorum = panel_size // 2 + 1 if quorum is None else quorum
        if not 1 <= quorum <= panel_size:
            raise ValueError(f"quorum must be in [1, {panel_size}], got {quorum}")
        self.panel_size = panel_size
        self.quorum = quorum
        self._proposals: dict[str, _ProposalRecord] = {}

    def open_proposal(
        self,
        question: str,
        options: Sequence[str] = ("approve", "reject"),
        context: dict[str, Any] | None = None,
    ) -> Proposal:
        proposal = Proposal(
            id=f"prop-{uuid.uuid4().hex[:8]}",
            question=question,
            options=tuple(options),
            context=dict(context or {}),
        )
        self._proposals[proposal.id] = _ProposalRecord(proposal)
        logger.debug("Opened proposal %s: %s", proposal.id, question)
        return proposal

    def _record(self, proposal_id: str) -> _ProposalRecord:
        record = self._proposals.get(proposal_id)
        if record is None:
            raise KeyError(f"Unknown proposal: {proposal_id}")
        return record

    async def cast_vote(self, proposal_id: str, voter_id: str, choice: bool | tuple[str, ...]) -> ProposalState:
        """
        Record a vote, replacing any earlier vote by the same reviewer.

        Raises:
            ProposalResolved: The proposal is already resolved
            ValueError: More distinct reviewers than the panel size
        """
        record = self._record(proposal_id)
        async with record.lock:
            if record.state == ProposalState.RESOLVED:
                raise ProposalResolved(f"Proposal {proposal_id} is already resolved")
            if voter_id not in record.votes and len(record.votes) >= self.panel_size:
                raise ValueError(f"Panel of {self.panel_size} is full; {voter_id} cannot vote")
            if isinstance(choice, list):
                choice = tuple(choice)
            record.votes[voter_id] = Vote(proposal_id, voter_id, choice)
            return self._tally(record)

    async def status(self, proposal_id: str) -> ProposalState:
        """Current state, tallying if quorum has been reached."""
        record = self._record(proposal_id)
        async with record.lock:
            return self._tally(record)

    def outcome(self, proposal_id: str) -> ConsensusOutcome | None:
        return self._record(proposal_id).outcome

    def _tally(self, record: _ProposalRecord) -> ProposalState:
        # callers hold record.lock
        if record.state == ProposalState.RESOLVED:
            return record.state
        if len(record.votes) < self.quorum:
            record.state = ProposalState.OPEN
            return record.state

        record.state = ProposalState.TALLYING
        accepts = sum(1 for v in record.votes.values() if v.accepts(record.proposal))
        rejects = len(record.votes) - accepts
        outstanding = self.panel_size - len(record.votes)

        if accepts == rejects and outstanding > 0:
            record.state = ProposalState.OPEN
            return record.state

        resolution = Resolution.ACCEPTED if accepts > rejects else Resolution.REJECTED
        self._resolve(record, resolution, accepts, rejects, "majority")
        return record.state

    def _resolve(
        self,
        record: _ProposalRecord,
        resolution: Resolution,
        accepts: int,
        rejects: int,
        reason: str,
    ) -> None:
        record.state = ProposalState.RESOLVED
        record.outcome = ConsensusOutcome(
            proposal_id=record.proposal.id,
            question=record.proposal.question,
            resolution=resolution,
            accepts=accepts,
            rejects=rejects,
            reason=reason,
        )
        record.resolved.set()
        logger.info(
            "Proposal %s %s (%d for, %d against, %s)",
            record.proposal.id,
            resolution.value,
            accepts,
            rejects,
            reason,
        )

    def discard(self, proposal_id: str) -> None:
        """Drop a proposal and its votes once its outcome has been recorded."""
        self._proposals.pop(proposal_id, None)

    async def _collect(self, proposal: Proposal, voter_id: str, reviewer: Reviewer) -> None:
        try:
            choice = await reviewer(proposal)
        except Exception as exc:
            logger.warning("Reviewer %s failed on %s: %s", voter_id, proposal.id, exc)
            return
        try:
            await self.cast_vote(proposal.id, voter_id, choice)
        except ProposalResolved:
            logger.debug("Late vote from %s on resolved proposal %s", voter_id, proposal.id)

    async def _await_resolution(self, proposal_id: str, deadline: float) -> ConsensusOutcome:
        record = self._record(proposal_id)
        try:
            await asyncio.wait_for(record.resolved.wait(), timeout=deadline)
        except asyncio.TimeoutError as exc:
            raise QuorumTimeout(proposal_id, len(record.votes), self.quorum) from exc
        assert record.outcome is not None
        return record.outcome

    async def decide(
        self,
        question: str,
        reviewers: Sequence[Reviewer],
        deadline: float = 120.0,
        options: Sequence[str] = ("approve", "reject"),
        context: dict[str, Any] | None = None,
    ) -> ConsensusOutcome:
        """
        Put a question to the panel and wait for its resolution.

        Reviewers run concurrently. If the proposal has not resolved by the
        deadline it is rejected with reason "quorum-timeout". The proposal is
        discarded before returning.
        """
        if len(reviewers) > self.panel_size:
            raise ValueError(f"{len(reviewers)} reviewers exceed the panel size {self.panel_size}")

        proposal = self.open_proposal(question, options, context)
        record = self._record(proposal.id)
        voters = [
            asyncio.create_task(self._collect(proposal, f"reviewer-{i}", reviewer))
            for i, reviewer in enumerate(reviewers)
        ]

        try:
            return await self._await_resolution(proposal.id, deadline)
        except QuorumTimeout as exc:
            logger.warning(
                "Proposal %s timed out with %d/%d votes", exc.proposal_id, exc.votes_cast, exc.quorum
            )
            async with record.lock:
                if record.outcome is None:
                    accepts = sum(1 for v in record.votes.values() if v.accepts(proposal))
                    self._resolve(
                        record,
                        Resolution.REJECTED,
                        accepts,
                        len(record.votes) - accepts,
                        QUORUM_TIMEOUT_REASON,
                    )
            assert record.outcome is not None
            return record.outcome
        finally:
            for voter in voters:
                if not voter.done():
                    voter.cancel()
            await asyncio.gather(*voters, return_exceptions=True)
            self.discard(proposal.id)


class WorkerReviewer:
    """Adapts a worker into a reviewer: success output starting with yes/approve accepts."""

    ACCEPT_WORDS = ("yes", "approve", "approved", "accept", "lgtm")

    def __init__(self, worker: Callable[[WorkOrder], Awaitable[Any]], model: str = "sonnet") -> None:
        self.worker = worker
        self.model = model

    async def __call__(self, proposal: Proposal) -> bool | tuple[str, ...]:
        order = WorkOrder(
            id=f"review-{uuid.uuid4().hex[:8]}",
            task_id=str(proposal.context.get("task_id", proposal.id)),
            objective=proposal.question,
            expected_outcome=f"Answer with one of: {', '.join(proposal.options)}",
            required_actions=("Answer on the first line with a single option",),
            prohibited_actions=("Do not modify any files",),
            context=dict(proposal.context),
            model=self.model,
        )
        result = await self.worker(order)
        if isinstance(result, dict):
            text = str(result.get("summary") or result.get("output") or "")
        else:
            text = str(getattr(result, "summary", result))
        first = text.strip().splitlines()[0].strip().lower() if text.strip() else ""

        if len(proposal.options) > 2 or proposal.options[:2] != ("approve", "reject"):
            ranked = [o for o in proposal.options if first.startswith(o.lower())]
            if ranked:
                rest = [o for o in proposal.options if o != ranked[0]]
                return (ranked[0], *rest)
        return first.startswith(self.ACCEPT_WORDS)
