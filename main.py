from __future__ import annotations
import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Dict, Optional

import requests
from dotenv import load_dotenv

from formatting import format_crypto_amount, format_currency, format_duration
load_dotenv()

# -----------------------------
# Config defaults
# -----------------------------
DEFAULT_BASE_URL = os.getenv("EXPERIMENT_RUNNER_BASE_URL", "http://127.0.0.1:8000")
DEFAULT_EXPERIMENT_ID = "demo"

logger = logging.getLogger("experiment_runner")

# -----------------------------
# Simple HTTP client helpers
# -----------------------------
def _request(method: str, base_url: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    url = f"{base_url.rstrip('/')}{path}"
    r = requests.request(method, url, json=payload, timeout=60)
    if r.status_code >= 400:
        logger.error("HTTP %s from %s", r.status_code, url)
        try:
            logger.error("Body: %s", r.json())
        except ValueError:
            logger.error("Body: %s", r.text[:1000])
        r.raise_for_status()
    return r.json()

# -----------------------------
# API wrappers
# -----------------------------
def start_run(base_url: str, experiment_id: str) -> Dict[str, Any]:
    return _request("POST", base_url, f"/v1/experiments/{experiment_id}/runs")

def tick(base_url: str, run_id: str, count: int = 1) -> Dict[str, Any]:
    return _request("POST", base_url, f"/v1/runs/{run_id}/tick", {"count": count})

def respond(base_url: str, run_id: str, step_id: str, value: Any) -> Dict[str, Any]:
    return _request("POST", base_url, f"/v1/runs/{run_id}/responses", {"step_id": step_id, "value": value})

def advance(base_url: str, run_id: str) -> Dict[str, Any]:
    return _request("POST", base_url, f"/v1/runs/{run_id}/advance")

def submit(base_url: str, run_id: str) -> Dict[str, Any]:
    return _request("POST", base_url, f"/v1/runs/{run_id}/submit")

# -----------------------------
# Pretty printers
# -----------------------------
def print_step(run: Dict[str, Any]) -> None:
    step = run.get("step") or {}
    print(f"\n===== Step {run['current_step_index'] + 1}/{run['total_steps']} "
          f"({run['current_section']}, {run['progress']:.0f}% done) =====")
    print(step.get("title", ""))
    for key in ("content", "description"):
        if step.get(key):
            print(step[key])
    if step.get("options"):
        for i, opt in enumerate(step["options"], start=1):
            print(f"  {i}) {opt}")

def print_valuation(run: Dict[str, Any]) -> None:
    val = run.get("valuation")
    if not val:
        return
    print(f"\n--- Round {run['current_round']} of {run['total_rounds']} "
          f"({format_duration(run['round_duration_seconds'])} per round) ---")
    for a in val["assets"]:
        print(f"  {a['asset_code']:<6} {format_crypto_amount(a['amount'], a['asset_code']):>14}"
              f"  @ {format_currency(a['price'])} = {format_currency(a['value'])}  [{a['source']}]")
    line = f"  Total: {format_currency(val['total_value'])}  ({format_currency(val['total_stable_value'], prefix='')} stable)"
    if val.get("change"):
        line += f"  {val['change']['formatted']}"
    print(line)
    for err in run.get("data_errors") or []:
        print(f"  (note) {err}")

# -----------------------------
# Play loop
# -----------------------------
def _answer(step: Dict[str, Any], auto: bool) -> Any:
    options = step.get("options") or []
    if auto:
        return options[0] if options else "demo answer"
    raw = input("Your answer: ").strip()
    if options and raw.isdigit() and 1 <= int(raw) <= len(options):
        return options[int(raw) - 1]
    return raw or "(no answer)"

def _run_rounds(base_url: str, run: Dict[str, Any], auto: bool) -> Dict[str, Any]:
    print_valuation(run)
    last_round = run["current_round"]
    while run["timer_active"]:
        if auto:
            # skip straight to the end of the round
            run = tick(base_url, run["run_id"], max(1, run["round_duration_seconds"] - run["round_elapsed_seconds"]))
        else:
            time.sleep(1.0)
            run = tick(base_url, run["run_id"])
        if run["current_round"] != last_round or not run["timer_active"]:
            last_round = run["current_round"]
            print_valuation(run)
    return run

def play(base_url: str, experiment_id: str, auto: bool) -> None:
    run = start_run(base_url, experiment_id)
    run_id = run["run_id"]
    print(f"\n✅ Run started: {run_id}")

    while run["current_section"] != "completed":
        step = run["step"]
        print_step(run)
        if step["kind"] == "scenario":
            run = respond(base_url, run_id, step["ref_id"], _answer(step, auto))
            run = _run_rounds(base_url, run, auto)
        elif step["kind"] == "survey_question":
            run = respond(base_url, run_id, step["ref_id"], _answer(step, auto))
        elif not auto:
            input("(press Enter to continue)")
        run = advance(base_url, run_id)

    final = submit(base_url, run_id)
    print("\n===== RESPONSES =====")
    print(json.dumps(final["responses"], indent=2))
    print("=" * 21)

# -----------------------------
# Run server (programmatically)
# -----------------------------
def run_server(port: int, host: str = "127.0.0.1", reload: bool = True) -> None:
    import uvicorn
    uvicorn.run("api:app", host=host, port=port, reload=reload)

# -----------------------------
# Health checker
# -----------------------------
def health_check(base_url: str, experiment_id: str) -> None:
    print(f"🔎 Checking server at {base_url} ...")
    try:
        r = requests.get(f"{base_url.rstrip('/')}/docs", timeout=10)
        r.raise_for_status()
        print("✅ /docs reachable")

        run = start_run(base_url, experiment_id)
        _request("DELETE", base_url, f"/v1/runs/{run['run_id']}")
        print(f"✅ JSON API ok (run_id={run['run_id']}, {run['total_steps']} steps)")
    except requests.RequestException as e:
        print(f"❌ Health check failed: {e}")
        sys.exit(1)

# -----------------------------
# CLI
# -----------------------------
def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Experiment runner: server + participant client in one file")
    p.add_argument("--log-level", type=str, default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")

    sub = p.add_subparsers(dest="cmd", required=True)

    ps = sub.add_parser("serve", help="Start the FastAPI server (uvicorn)")
    ps.add_argument("--port", type=int, default=8000, help="Port to bind")
    ps.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind")
    ps.add_argument("--no-reload", action="store_true", help="Disable auto-reload")

    pp = sub.add_parser("play", help="Take part in an experiment run (interactive or auto)")
    pp.add_argument("--experiment-id", type=str, default=DEFAULT_EXPERIMENT_ID, help="Experiment to run")
    pp.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")
    pp.add_argument("--auto-demo", action="store_true", help="Answer everything automatically and skip timers")

    ph = sub.add_parser("health", help="Check server availability")
    ph.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")
    ph.add_argument("--experiment-id", type=str, default=DEFAULT_EXPERIMENT_ID, help="Experiment used for the probe run")

    return p.parse_args()

def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.cmd == "serve":
        run_server(port=args.port, host=args.host, reload=(not args.no_reload))
        return

    if args.cmd == "play":
        try:
            requests.get(f"{args.base_url.rstrip('/')}/docs", timeout=5).raise_for_status()
        except requests.RequestException:
            print("⚠️  Could not reach the server. Is it running?\n"
                  "    Start it in another terminal:\n"
                  "    python main.py serve")
            sys.exit(1)
        play(args.base_url, args.experiment_id, auto=args.auto_demo)
        return

    if args.cmd == "health":
        health_check(args.base_url, args.experiment_id)
        return

    print("Unknown command. Try: python main.py --help")
    sys.exit(2)

if __name__ == "__main__":
    main()
