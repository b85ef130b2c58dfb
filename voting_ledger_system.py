#!/usr/bin/env python3
"""
Election Ledger System
======================
Election-level operations over the DPLT network: creating and closing
elections, casting plaintext or committed (ZKP) votes, and reading results
back from the replicated chain.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from dplt.dplt_ledger import SubmitStatus, Transaction, TransactionKind
from dplt.dplt_network import NetworkHandle, SubmitReceipt
from utils.utils import generate_secure_id, now_ms
from zk.zk_proofs import BuiltVote, EncodingError, TallyCommitment, ZKPVote, ZKPVoteBuilder

logger = logging.getLogger(__name__)

START_DELAY_MS = 1000
DEFAULT_DURATION_MS = 24 * 60 * 60 * 1000

EligibilityCheck = Callable[[str, str], bool]


@dataclass
class ElectionRecord:
    election_id: str
    name: str
    candidates: List[str]
    start_time: int
    end_time: int
    created_by: str
    ended: bool = False
    ended_by: Optional[str] = None
    committed: bool = False


@dataclass
class CastVoteResult:
    accepted: bool
    election_id: str
    voter: str
    zkp: bool
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    verification_hash: Optional[str] = None
    receipt: Optional[SubmitReceipt] = None
    # Private to the voter: only needed for an explicit tally opening
    built_vote: Optional[BuiltVote] = field(default=None, repr=False)


@dataclass
class TallyResult:
    election_id: str
    candidates: List[str]
    plaintext_counts: List[int]
    commitments: List[TallyCommitment]
    num_plaintext_votes: int
    num_zkp_votes: int
    rejected_zkp_votes: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'electionId': self.election_id,
            'candidates': self.candidates,
            'plaintextCounts': self.plaintext_counts,
            'zkpCommitments': [c.to_dict() for c in self.commitments],
            'plaintextVotes': self.num_plaintext_votes,
            'zkpVotes': self.num_zkp_votes,
            'rejectedZkpVotes': self.rejected_zkp_votes,
            'timestamp': self.timestamp,
        }


class VotingLedgerSystem:
    """Election facade over an explicitly constructed NetworkHandle"""

    def __init__(self, network: NetworkHandle, eligibility_check: Optional[EligibilityCheck] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.network = network
        self.eligibility_check = eligibility_check
        self._clock = clock or now_ms
        self.verifier = network.zkp_verifier
        self.builder = ZKPVoteBuilder(self.verifier.group)
        self.monitor = network.monitor

    # --------------------------------------------------------------- reading

    def _reference_node(self):
        participants = self.network.coordinator.participants()
        return participants[0] if participants else self.network.nodes[0]

    def _committed_transactions(self, kind: Optional[TransactionKind] = None) -> List[Transaction]:
        return [
            tx
            for block in self._reference_node().chain
            for tx in block.transactions
            if kind is None or tx.kind == kind
        ]

    def find_election(self, election_id: str, include_pending: bool = True) -> Optional[ElectionRecord]:
        """Rebuild an election's state from committed (and optionally pending) transactions"""
        node = self._reference_node()
        committed = self._committed_transactions()
        pending = node.pending if include_pending else []

        record = None
        for tx in committed + pending:
            if tx.payload.get('electionId') != election_id:
                continue
            if tx.kind == TransactionKind.ELECTION_CREATED and record is None:
                record = ElectionRecord(
                    election_id=election_id,
                    name=tx.payload['electionName'],
                    candidates=list(tx.payload['candidates']),
                    start_time=tx.payload['startTime'],
                    end_time=tx.payload['endTime'],
                    created_by=tx.payload['createdBy'],
                    committed=node.is_committed(tx.id),
                )
            elif tx.kind == TransactionKind.ELECTION_ENDED and record is not None:
                record.ended = True
                record.ended_by = tx.payload['endedBy']
        return record

    def list_elections(self) -> List[ElectionRecord]:
        election_ids = []
        for tx in self._committed_transactions(TransactionKind.ELECTION_CREATED):
            if tx.payload['electionId'] not in election_ids:
                election_ids.append(tx.payload['electionId'])
        return [self.find_election(election_id, include_pending=False) for election_id in election_ids]

    def _votes(self, election_id: str) -> List[Transaction]:
        return [tx for tx in self._committed_transactions(TransactionKind.VOTE)
                if tx.payload.get('electionId') == election_id]

    # --------------------------------------------------------------- writing

    def create_election(self, name: str, candidates: List[str], created_by: str,
                        start_time: Optional[int] = None, end_time: Optional[int] = None,
                        election_id: Optional[str] = None,
                        node_id: Optional[str] = None) -> Tuple[str, SubmitReceipt]:
        election_id = election_id or generate_secure_id("election")
        if start_time is None:
            start_time = self._clock() + START_DELAY_MS
        if end_time is None:
            end_time = start_time + DEFAULT_DURATION_MS

        receipt = self.network.submit_transaction(TransactionKind.ELECTION_CREATED, {
            'electionId': election_id,
            'electionName': name,
            'candidates': list(candidates),
            'startTime': start_time,
            'endTime': end_time,
            'createdBy': created_by,
        }, node_id=node_id)

        if receipt.accepted:
            logger.info(
                f"Election {election_id} '{name}' submitted with {len(candidates)} candidates")
        else:
            logger.warning(
                f"Election '{name}' rejected: {receipt.reason}")
        return election_id, receipt

    def cast_vote(self, election_id: str, voter: str, candidate_index: int,
                  use_zkp: bool = False, node_id: Optional[str] = None) -> CastVoteResult:
        result = CastVoteResult(
            accepted=False, election_id=election_id, voter=voter, zkp=use_zkp)

        if self.eligibility_check is not None and not self.eligibility_check(election_id, voter):
            result.reason = "Voter is not eligible for this election"
            return result

        election = self.find_election(election_id)
        if election is None:
            result.reason = f"Unknown election {election_id}"
            return result
        if election.ended:
            result.reason = f"Election {election_id} has ended"
            return result
        if not 0 <= candidate_index < len(election.candidates):
            result.reason = f"Candidate index {candidate_index} out of range"
            return result

        payload: Dict[str, Any] = {'electionId': election_id, 'voter': voter}
        if use_zkp:
            with self.monitor.start_operation("zkp_vote_build"):
                built = self.builder.build(
                    election_id, voter, candidate_index, len(election.candidates))
            payload['zkpVote'] = built.vote.to_payload()
            result.built_vote = built
            result.verification_hash = self.verifier.verification_hash(
                built.vote)
        else:
            payload['candidateIndex'] = candidate_index

        with self.monitor.start_operation("vote_submit"):
            receipt = self.network.submit_transaction(
                TransactionKind.VOTE, payload, node_id=node_id)

        result.receipt = receipt
        result.transaction_id = receipt.transaction_id
        if receipt.status == SubmitStatus.DUPLICATE:
            result.reason = "Voter has already voted in this election"
        elif not receipt.accepted:
            result.reason = receipt.reason
        else:
            result.accepted = True
        return result

    def end_election(self, election_id: str, ended_by: str, node_id: Optional[str] = None) -> SubmitReceipt:
        if self.find_election(election_id) is None:
            return SubmitReceipt(SubmitStatus.REJECTED, None, node_id,
                                 f"Unknown election {election_id}")

        receipt = self.network.submit_transaction(TransactionKind.ELECTION_ENDED, {
            'electionId': election_id,
            'endedBy': ended_by,
        }, node_id=node_id)
        if receipt.accepted:
            logger.info(f"Election {election_id} ended by {ended_by}")
        return receipt

    def run_round(self, force: bool = False):
        return self.network.request_block_round(force=force)

    # --------------------------------------------------------------- results

    def plaintext_results(self, election_id: str) -> List[int]:
        election = self.find_election(election_id, include_pending=False)
        if election is None:
            raise ValueError(f"Unknown election {election_id}")

        counts = [0] * len(election.candidates)
        for tx in self._votes(election_id):
            index = tx.payload.get('candidateIndex')
            if index is not None and 0 <= index < len(counts):
                counts[index] += 1
        return counts

    def zkp_votes(self, election_id: str) -> Tuple[List[ZKPVote], int]:
        """Committed ZKP votes that decode and verify, plus the number that did not"""
        votes = []
        rejected = 0
        for tx in self._votes(election_id):
            if tx.payload.get('zkpVote') is None:
                continue
            try:
                vote = self.verifier.decode_vote(
                    election_id, tx.payload['voter'], tx.payload['zkpVote'])
            except EncodingError as e:
                logger.warning(f"Skipping undecodable vote from {tx.payload['voter']}: {e}")
                rejected += 1
                continue
            if self.verifier.verify_vote(vote):
                votes.append(vote)
            else:
                rejected += 1
        return votes, rejected

    def zkp_tally(self, election_id: str) -> TallyResult:
        election = self.find_election(election_id, include_pending=False)
        if election is None:
            raise ValueError(f"Unknown election {election_id}")

        with self.monitor.start_operation("zkp_tally"):
            votes, rejected = self.zkp_votes(election_id)
            votes = [v for v in votes if len(v.slots) == len(election.candidates)]
            commitments = [self.verifier.tally(i, votes)
                           for i in range(len(election.candidates))]

        plaintext = self.plaintext_results(election_id)
        return TallyResult(
            election_id=election_id,
            candidates=election.candidates,
            plaintext_counts=plaintext,
            commitments=commitments,
            num_plaintext_votes=sum(plaintext),
            num_zkp_votes=len(votes),
            rejected_zkp_votes=rejected,
        )

    def open_zkp_tally(self, tally: TallyResult, blinding_sums: List[int]) -> List[int]:
        """Open each candidate's aggregate given the summed per-slot blinding factors"""
        if len(blinding_sums) != len(tally.commitments):
            raise ValueError("Need one blinding sum per candidate")
        return [self.verifier.open_tally(commitment, blinding_sum)
                for commitment, blinding_sum in zip(tally.commitments, blinding_sums)]

    def verify_zkp_vote(self, election_id: str, voter: str) -> bool:
        for tx in self._votes(election_id):
            if tx.payload.get('voter') == voter and tx.payload.get('zkpVote') is not None:
                return self.verifier.verify_payload(election_id, voter, tx.payload['zkpVote'])
        return False

    def status(self) -> Dict[str, Any]:
        stats = self.network.get_network_stats()
        stats['elections'] = len(self.list_elections())
        return stats
