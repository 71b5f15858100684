#!/usr/bin/env python3
"""
=========================================================
     🚀 MorphoLiq - Morpho Blue Liquidation Pipeline
=========================================================

Stages:
- ingest     Morpho API positions JSON -> candidates.jsonl
- simulate   candidates.jsonl -> opportunities.csv + tx_sim.json
- plan       opportunities.csv -> tx_plan.json (orders for EXEC rows)
- preflight  chain id, artifact freshness, quoter, key
- exec       tx_plan.json -> at most one liquidation tx (tx_exec.json)
- cycle      simulate -> plan -> preflight -> exec

Usage:
    python main.py ingest --positions positions.json
    python main.py simulate
    python main.py cycle --chain ARBITRUM --data-dir data
"""

# Suppress pkg_resources deprecation warning from web3
import warnings
warnings.filterwarnings("ignore", message="pkg_resources is deprecated")

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from liqcore.config_loader import ConfigLoader, ConfigValidationError
from liqcore.executor import ExecutionReport
from liqcore.models import (
    REASON_OK,
    STATUS_BELOW_WATCH,
    STATUS_EXEC_READY,
    STATUS_WATCH,
    Candidate,
    Plan,
)
from liqcore.network import NetworkManager
from liqcore.pipeline import (
    PreflightError,
    run_cycle,
    run_exec,
    run_ingest,
    run_plan,
    run_preflight,
    run_simulate,
)

logger = logging.getLogger("morpholiq")

COMMANDS = ("ingest", "simulate", "plan", "preflight", "exec", "cycle")


# ============================================
# Console output
# ============================================

def print_banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60)


def print_ingest(candidates: List[Candidate]) -> None:
    print_banner("📥 Ingest")
    print(f"  Candidates:         {len(candidates)}")
    for status in (STATUS_EXEC_READY, STATUS_WATCH, STATUS_BELOW_WATCH):
        count = sum(1 for c in candidates if c.status == status)
        print(f"  {status + ':':<20}{count}")
    print(f"  Not OK (reason):    {sum(1 for c in candidates if c.reason != REASON_OK)}")
    print("=" * 60)


def print_simulate(summary: Dict[str, Any]) -> None:
    diag = summary["diagnostics"]
    eth = summary["ethPrice"]
    print_banner("📊 Simulate")
    print(f"  ETH/USD:            {eth['usd']:.2f} ({eth['source']}{', STALE' if eth['stale'] else ''})")
    print(f"  Est. Gas (USD):     {summary['estimatedGasUsd']:.4f}")
    print(f"  Required Net:       ${summary['requiredNetUsd']:.2f}")
    print(f"  Quoter OK:          {'✅' if summary['quoterOk'] else '❌'}")
    print(f"  Considered:         {diag['considered']}")
    print(f"  Produced:           {diag['produced']}")
    print(f"  Skipped (unsupp.):  {diag['skippedUnsupported']}")
    print(f"  Passes (exec):      {diag['passesExec']}")
    if diag["bestExecNet"] is not None:
        print(f"  Best Exec Net:      ${diag['bestExecNet']:.2f} ({diag['bestExecMode']})")
    print("=" * 60)


def print_plan(plan: Plan) -> None:
    print_banner("🗺️  Plan")
    print(f"  Items:              {len(plan.items)}")
    print(f"  EXEC built:         {plan.exec_built}")
    print(f"  Downgraded:         {plan.exec_downgraded}")
    for item in plan.exec_items[:5]:
        print(f"    - {item.candidate_id[:48]}... net=${item.net_profit_usd:.2f}")
    print("=" * 60)


def print_exec(report: ExecutionReport) -> None:
    print_banner("⚡ Exec")
    print(f"  State:              {report.state.value}")
    print(f"  Tried:              {report.tried}")
    print(f"  Skipped (healthy):  {report.skipped_healthy}")
    print(f"  Failed:             {report.failed}")
    print(f"  Gas Aborted:        {report.gas_aborted}")
    if report.tx_hash:
        print(f"  TX Hash:            {report.tx_hash}")
    elif report.reason:
        print(f"  Reason:             {report.reason}")
    print("=" * 60)


# ============================================
# Entry Point
# ============================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="MorphoLiq - Morpho Blue liquidation pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py ingest --positions positions.json
  python main.py simulate
  python main.py plan
  python main.py cycle --chain ARBITRUM
        """
    )
    parser.add_argument("command", choices=COMMANDS, help="pipeline stage to run")
    parser.add_argument(
        "--chain", type=str, default=os.getenv("CHAIN_NAME", "ARBITRUM"),
        help="chain entry in config/chains.json (default: ARBITRUM)"
    )
    parser.add_argument(
        "--data-dir", type=str, default=None,
        help="artifact directory (default: DATA_DIR or data/)"
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="path to chains.json"
    )
    parser.add_argument(
        "--positions", type=str, default=None,
        help="Morpho API positions JSON (ingest only)"
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    loader = ConfigLoader(config_path=args.config)
    chain = loader.get_chain_config(args.chain)
    settings = loader.get_settings()
    data_dir = Path(args.data_dir) if args.data_dir else None

    if args.command == "ingest":
        if not args.positions:
            raise ConfigValidationError("ingest requires --positions")
        candidates = run_ingest(Path(args.positions), chain, settings, data_dir)
        print_ingest(candidates)
        return 0

    async with NetworkManager(chain) as network:
        if args.command == "simulate":
            print_simulate(await run_simulate(network, chain, settings, data_dir))
        elif args.command == "plan":
            print_plan(await run_plan(network, chain, settings, data_dir))
        elif args.command == "preflight":
            await run_preflight(network, chain, settings, data_dir)
            print("✅ preflight ok")
        elif args.command == "exec":
            print_exec(await run_exec(network, chain, settings, data_dir))
        else:
            result = await run_cycle(network, chain, settings, data_dir)
            print(f"✅ cycle completed in {result['durationSec']:.2f}s")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\n\n🛑 Shutting down...")
        return 1
    except PreflightError as e:
        logger.error(f"❌ {e}: {e.status}")
        return 1
    except Exception as e:
        logger.exception(f"❌ [{args.command}] failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
