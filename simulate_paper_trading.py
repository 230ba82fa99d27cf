import argparse
import asyncio
import json
import logging

from gate_mm.sim.harness import build_default_scenarios, run_scenario
from gate_mm.utils.logging import setup_logger


async def main():
    parser = argparse.ArgumentParser(description="Offline paper trading simulation (no network, no real orders).")
    parser.add_argument("--scenario", default="grid_round_trip")
    parser.add_argument("--all", action="store_true", help="Run all built-in scenarios")
    parser.add_argument("--json", action="store_true", help="Print JSON report")
    parser.add_argument("--verbose", action="store_true", help="Show strategy logs")
    args = parser.parse_args()

    setup_logger("gate_mm", logging.INFO if args.verbose else logging.WARNING)

    scenarios = build_default_scenarios()
    scenario_names = list(scenarios.keys())

    to_run = scenario_names if args.all else [args.scenario]
    for name in to_run:
        if name not in scenarios:
            raise SystemExit(f"Unknown scenario: {name}. Available: {', '.join(scenario_names)}")

        config, steps = scenarios[name]
        session, report = await run_scenario(steps, config=config)
        await session.shutdown()

        if args.json:
            payload = {"scenario": name, **report.__dict__}
            print(json.dumps(payload, ensure_ascii=False, indent=2))
        else:
            ledger = report.last_ledger
            print(f"\n=== {name} ===")
            print(f"Contract: {report.contract} ({report.strategy})")
            print(f"Steps: {report.steps} | Runs: {report.runs} | Final state: {report.final_state}")
            print(f"Reconcile passes: {report.reconcile_passes}")
            print(f"Placed orders: {report.placed_orders}")
            print(f"Cancels: {report.cancels}")
            print(f"Fills: {report.fills}")
            print(f"Profit-target triggers: {report.guardian_triggers}")
            print(
                f"Position: long={ledger['long']} short={ledger['short']} | "
                f"PnL: realized={ledger['realized_pnl']:.4f} unrealized={ledger['unrealized_pnl']:.4f}"
            )


if __name__ == "__main__":
    asyncio.run(main())
