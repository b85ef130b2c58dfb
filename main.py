import asyncio
import logging
import random
import time
from dataclasses import replace
from typing import List
from pathlib import Path
import argparse
import sys

from config.config import SystemConfig, load_config
from dplt.dplt_network import NetworkHandle
from utils.utils import setup_logging, save_results, create_performance_report, format_duration
from voting_ledger_system import VotingLedgerSystem

logger = logging.getLogger(__name__)

PARTITION_BLOCK_INTERVAL_MS = 200
PARTITION_SYNC_INTERVAL_MS = 100


def _print_consistency(network: NetworkHandle):
    consistency = network.get_network_consistency()
    print(f"   Consistent: {consistency['consistent']} "
          f"({consistency['nodeCount']} nodes, {consistency['blockCount']} blocks)")
    for node in network.nodes:
        print(f"   • {node.node_id}: {node.chain_length} blocks, tip {node.tip.hash[:16]}..., "
              f"{len(node.pending)} pending")


def run_demo(config: SystemConfig, num_voters: int = 20, num_candidates: int = 3,
             use_zkp: bool = False, seed: int = 42) -> bool:
    print("=" * 80)
    print("DPLT ELECTION LEDGER - DEMONSTRATION")
    print(f"   {config.ledger.node_count} ledger nodes, "
          f"{'committed (ZKP)' if use_zkp else 'plaintext'} votes")
    print("=" * 80)

    network = NetworkHandle(config)
    system = VotingLedgerSystem(network)
    rng = random.Random(seed)
    candidates = [f"Candidate {chr(ord('A') + i)}" for i in range(num_candidates)]

    try:
        election_id, receipt = system.create_election(
            "Demo Election", candidates, created_by="election_authority")
        if not receipt.accepted:
            print(f"\n Election rejected: {receipt.reason}")
            return False
        system.run_round(force=True)
        print(f"\nCreated election {election_id} with {num_candidates} candidates")

        choices: List[int] = []
        built_votes = []
        vote_start = time.time()
        for i in range(num_voters):
            choice = rng.randrange(num_candidates)
            node_id = config.ledger.node_ids[i % config.ledger.node_count]
            result = system.cast_vote(
                election_id, f"voter_{i:04d}", choice, use_zkp=use_zkp, node_id=node_id)
            if result.accepted:
                choices.append(choice)
                if result.built_vote is not None:
                    built_votes.append(result.built_vote)
            else:
                logger.warning(f"Vote from voter_{i:04d} rejected: {result.reason}")
        vote_time = time.time() - vote_start

        # A repeated vote must be turned away
        repeat = system.cast_vote(election_id, "voter_0000", 0, use_zkp=use_zkp)
        print(f"Repeat vote by voter_0000 accepted: {repeat.accepted} ({repeat.reason})")

        block = system.run_round(force=True)
        if block is not None:
            print(f"Sealed block {block.index} with {block.transaction_count} transactions "
                  f"by {block.producer_id}")
        system.end_election(election_id, ended_by="election_authority")
        system.run_round(force=True)

        print("\nNetwork state:")
        _print_consistency(network)

        tally = system.zkp_tally(election_id)
        expected = [choices.count(i) for i in range(num_candidates)]
        print("\n" + "=" * 40)
        print("ELECTION RESULTS")
        print("=" * 40)

        opened = None
        if use_zkp:
            blinding_sums = [system.verifier.blinding_sum(built_votes, i)
                             for i in range(num_candidates)]
            opened = system.open_zkp_tally(tally, blinding_sums)
            for i, commitment in enumerate(tally.commitments):
                print(f"  {candidates[i]}: commitment {commitment.commitment.encode()[:20]}... "
                      f"opens to {opened[i]} votes")
        else:
            for i, count in enumerate(tally.plaintext_counts):
                print(f"  {candidates[i]}: {count} votes")

        counts = opened if use_zkp else tally.plaintext_counts
        print(f"\nTally matches submitted choices: {counts == expected}")
        print(f"Vote submission: {format_duration(vote_time)} for {num_voters} voters")

        results_dir = Path(config.results_dir)
        report_path = results_dir / "dplt_demo_report.json"
        save_results({
            'election': tally.to_dict(),
            'opened_counts': opened,
            'expected_counts': expected,
            'network': network.get_network_stats(),
            'chain': [summary.to_dict() for summary in network.get_chain_snapshot(config.ledger.node_ids[0])],
        }, report_path)

        perf_report = create_performance_report(network.monitor)
        with open(results_dir / "performance_report.txt", "w") as f:
            f.write(perf_report)

        print(f"\nFull results saved to: {report_path}")
        return counts == expected

    except Exception as e:
        print(f"\n Demo failed: {e}")
        import traceback
        traceback.print_exc()
        return False


async def run_partition_demo(config: SystemConfig, num_voters: int = 8) -> bool:
    print("=" * 80)
    print("DPLT ELECTION LEDGER - PARTITION AND RECONCILIATION")
    print("=" * 80)

    config.ledger.block_interval_ms = PARTITION_BLOCK_INTERVAL_MS
    config.ledger.sync_interval_ms = PARTITION_SYNC_INTERVAL_MS
    if config.ledger.node_count < 2:
        print("Partition mode needs at least two nodes")
        return False

    network = NetworkHandle(config)
    system = VotingLedgerSystem(network)
    isolated = config.ledger.node_ids[-1]
    majority = config.ledger.node_ids[0]

    election_id, _ = system.create_election(
        "Partition Election", ["Yes", "No"], created_by="election_authority")
    system.run_round(force=True)

    print(f"\nPartitioning {isolated}...")
    network.partition(isolated)

    for i in range(num_voters):
        system.cast_vote(election_id, f"voter_{i:04d}", i % 2, node_id=majority)
        system.run_round(force=True)

    # The isolated node keeps accepting local traffic and seals its own fork
    network.submit_transaction(
        "VOTE", {'electionId': election_id, 'voter': "stranded_voter", 'candidateIndex': 0},
        node_id=isolated)
    network.produce_block_on(isolated)

    print("\nDuring partition:")
    _print_consistency(network)

    print(f"\nHealing {isolated} and running periodic tasks...")
    network.heal(isolated)
    await network.run(duration_s=1.0)

    print("\nAfter reconciliation:")
    _print_consistency(network)
    report = network.coordinator.last_report
    if report is not None:
        print(f"   Last reconciliation: {report.to_dict()['actions']}")

    stranded = [tx for node in network.nodes for block in node.chain
                for tx in block.transactions if tx.payload.get('voter') == "stranded_voter"]
    print(f"   Stranded vote recovered into the agreed chain on "
          f"{len(stranded)} of {len(network.nodes)} nodes")

    save_results({'network': network.get_network_stats()},
                 Path(config.results_dir) / "dplt_partition_report.json")
    return network.get_network_consistency()['consistent']


def main():
    parser = argparse.ArgumentParser(
        description='DPLT replicated election ledger')
    parser.add_argument('--mode', choices=['demo', 'partition'], default='demo')
    parser.add_argument('--nodes', type=int, default=None,
                        help='Number of ledger nodes')
    parser.add_argument('--voters', type=int, default=20,
                        help='Number of voters')
    parser.add_argument('--candidates', type=int, default=3,
                        help='Number of candidates')
    parser.add_argument('--zkp', action='store_true',
                        help='Cast committed votes with zero-knowledge proofs')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument('--log-level', type=str, default=None,
                        help='Override the configured log level')

    args = parser.parse_args()

    config = load_config(Path(args.config))
    if args.nodes is not None:
        config.ledger = replace(config.ledger, node_count=args.nodes, node_ids=[])
    setup_logging(args.log_level or config.log_level, log_dir=config.log_dir)

    if args.mode == 'demo':
        success = run_demo(config, args.voters, args.candidates, args.zkp)
    else:
        success = asyncio.run(run_partition_demo(config, args.voters))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
