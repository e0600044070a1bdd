"""Tests for the consensus engine."""

from __future__ import annotations

import asyncio

import pytest

from ultrawork.delegation.models import WorkerResult, WorkerStatus
from ultrawork.engine.consensus import (
    QUORUM_TIMEOUT_REASON,
    ConsensusEngine,
    Proposal,
    ProposalState,
    Resolution,
    Vote,
    WorkerReviewer,
)
from ultrawork.errors import ProposalResolved

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _voter(choice, delay: float = 0.0):
    async def review(proposal: Proposal):
        if delay:
            await asyncio.sleep(delay)
        return choice

    return review


class TestConstruction:
    @pytest.mark.parametrize("panel_size", [0, 2, 4])
    def test_panel_must_be_odd(self, panel_size):
        with pytest.raises(ValueError):
            ConsensusEngine(panel_size=panel_size)

    def test_default_quorum_is_majority(self):
        assert ConsensusEngine(panel_size=5).quorum == 3

    def test_quorum_bounds(self):
        with pytest.raises(ValueError):
            ConsensusEngine(panel_size=3, quorum=4)


class TestVote:
    def test_bool_choice(self):
        proposal = Proposal(id="p", question="q")
        assert Vote("p", "a", True).accepts(proposal)
        assert not Vote("p", "a", False).accepts(proposal)

    def test_ranked_choice(self):
        proposal = Proposal(id="p", question="q", options=("retry", "stop"))
        assert Vote("p", "a", ("retry", "stop")).accepts(proposal)
        assert not Vote("p", "a", ("stop", "retry")).accepts(proposal)
        assert not Vote("p", "a", ()).accepts(proposal)


class TestVoting:
    async def test_majority_accepts(self):
        engine = ConsensusEngine(panel_size=3)
        proposal = engine.open_proposal("Approve the plan?")

        assert await engine.cast_vote(proposal.id, "a", True) == ProposalState.OPEN
        assert await engine.cast_vote(proposal.id, "b", True) == ProposalState.RESOLVED

        outcome = engine.outcome(proposal.id)
        assert outcome.resolution == Resolution.ACCEPTED
        assert outcome.accepts == 2

    async def test_split_waits_for_tie_breaker(self):
        engine = ConsensusEngine(panel_size=3)
        proposal = engine.open_proposal("Approve the plan?")

        await engine.cast_vote(proposal.id, "a", True)
        assert await engine.cast_vote(proposal.id, "b", False) == ProposalState.OPEN
        assert await engine.cast_vote(proposal.id, "c", False) == ProposalState.RESOLVED
        assert engine.outcome(proposal.id).resolution == Resolution.REJECTED

    async def test_resolution_is_final(self):
        engine = ConsensusEngine(panel_size=3)
        proposal = engine.open_proposal("Approve the plan?")
        await engine.cast_vote(proposal.id, "a", False)
        await engine.cast_vote(proposal.id, "b", False)

        with pytest.raises(ProposalResolved):
            await engine.cast_vote(proposal.id, "c", True)
        assert engine.outcome(proposal.id).resolution == Resolution.REJECTED

    async def test_revote_replaces(self):
        engine = ConsensusEngine(panel_size=3, quorum=3)
        proposal = engine.open_proposal("Approve the plan?")
        await engine.cast_vote(proposal.id, "a", False)
        await engine.cast_vote(proposal.id, "a", True)
        await engine.cast_vote(proposal.id, "b", True)
        await engine.cast_vote(proposal.id, "c", False)

        outcome = engine.outcome(proposal.id)
        assert outcome.accepts == 2
        assert outcome.rejects == 1

    async def test_ranked_votes(self):
        engine = ConsensusEngine(panel_size=3)
        proposal = engine.open_proposal("How to proceed?", options=("retry", "stop"))
        await engine.cast_vote(proposal.id, "a", ["stop", "retry"])
        await engine.cast_vote(proposal.id, "b", ("stop", "retry"))
        assert engine.outcome(proposal.id).resolution == Resolution.REJECTED

    async def test_unknown_proposal(self):
        with pytest.raises(KeyError):
            await ConsensusEngine().cast_vote("prop-missing", "a", True)


class TestDecide:
    async def test_accepts_without_waiting_for_stragglers(self):
        engine = ConsensusEngine(panel_size=3)
        reviewers = [_voter(True), _voter(True), _voter(False, delay=10)]

        outcome = await asyncio.wait_for(engine.decide("Approve?", reviewers, deadline=5), timeout=2)

        assert outcome.accepted
        assert outcome.reason == "majority"

    async def test_quorum_timeout_rejects(self):
        engine = ConsensusEngine(panel_size=3)
        reviewers = [_voter(True), _voter(True, delay=10), _voter(True, delay=10)]

        outcome = await engine.decide("Approve?", reviewers, deadline=0.05)

        assert outcome.resolution == Resolution.REJECTED
        assert outcome.reason == QUORUM_TIMEOUT_REASON
        assert outcome.accepts == 1

    async def test_failing_reviewer_does_not_vote(self):
        async def broken(proposal):
            raise RuntimeError("reviewer offline")

        engine = ConsensusEngine(panel_size=3)
        outcome = await engine.decide("Approve?", [broken, _voter(False), _voter(False)], deadline=1)
        assert outcome.resolution == Resolution.REJECTED
        assert outcome.rejects == 2

    async def test_proposal_discarded(self):
        engine = ConsensusEngine(panel_size=3)
        outcome = await engine.decide("Approve?", [_voter(True)] * 3, deadline=1)
        with pytest.raises(KeyError):
            engine.outcome(outcome.proposal_id)

    async def test_too_many_reviewers(self):
        with pytest.raises(ValueError):
            await ConsensusEngine(panel_size=1).decide("Approve?", [_voter(True)] * 2)


class TestWorkerReviewer:
    async def test_approval(self):
        async def worker(order):
            assert "Do not modify any files" in order.prohibited_actions
            return WorkerResult(WorkerStatus.SUCCESS, "Approve\nThe plan is sound.")

        assert await WorkerReviewer(worker)(Proposal(id="p", question="Approve?")) is True

    async def test_rejection(self):
        async def worker(order):
            return "reject: touches the schema"

        assert await WorkerReviewer(worker)(Proposal(id="p", question="Approve?")) is False

    async def test_ranked_options(self):
        async def worker(order):
            return {"summary": "stop and report"}

        proposal = Proposal(id="p", question="How?", options=("retry with a narrower scope", "stop and report"))
        choice = await WorkerReviewer(worker)(proposal)
        assert choice == ("stop and report", "retry with a narrower scope")
