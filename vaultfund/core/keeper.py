"""
Local automation loop that plays the keeper role.
Polls check_upkeep() on a fixed interval and calls perform_upkeep() with the
returned performData whenever work is due.
"""

import time
import threading
from typing import Callable, Dict, List

from .config import EngineConfig, is_keeper_enabled, validate_config
from .schema import RepaymentPayment
from ..util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
running = False
shutdown_event = None


def keeper_cycle(engine) -> List[RepaymentPayment]:
    """One check/perform round trip against an engine."""
    upkeep_needed, perform_data = engine.repayment.check_upkeep(b"")
    if not upkeep_needed:
        return []
    return engine.repayment.perform_upkeep(perform_data)


def register_task(name: str, interval_sec: int, func: Callable, config: EngineConfig = None):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call (should be fast and not block)
        config: Optional deployment config validated at registration time
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    if config is not None:
        issues = validate_config(config)
        if issues:
            raise ValueError(f"Keeper configuration invalid: {issues}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None
    }

    logger.info(f"Registered keeper task '{name}' (every {interval_sec}s)")


def list_tasks() -> List[str]:
    """Registered task names, in registration order."""
    return list(tasks.keys())


def start():
    """
    Start the keeper loop.

    Cooperative scheduling on time.monotonic(); a failing task is logged and
    the loop keeps going.
    """
    global running, shutdown_event

    if not is_keeper_enabled():
        logger.info("Keeper disabled (KEEPER_ENABLED=false). Skipping start.")
        return

    if running:
        raise RuntimeError("Keeper already running")

    running = True
    shutdown_event = threading.Event()

    logger.info(f"Starting keeper loop with tasks: {list_tasks()}")

    try:
        while running and not shutdown_event.is_set():
            for name, task_info in list(tasks.items()):
                if should_run_task(name, task_info):
                    try:
                        run_task(name, task_info)
                    except RuntimeError as e:
                        logger.error(f"Keeper task '{name}' failed: {e}")

            shutdown_event.wait(0.1)

    except KeyboardInterrupt:
        logger.info("Keeper interrupted by user")
    finally:
        running = False
        logger.info("Keeper loop stopped")


def stop():
    """Stop the keeper loop gracefully."""
    global running

    if not running:
        logger.info("Keeper not running")
        return

    running = False
    if shutdown_event:
        shutdown_event.set()


def should_run_task(name: str, task_info: Dict) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True

    elapsed = time.monotonic() - task_info["last_run"]
    return elapsed >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Execute a task and record timing."""
    start_time = time.monotonic()

    try:
        result = task_info["func"]()
    except Exception as e:
        end_time = time.monotonic()
        # Failed tasks retry on the next interval, not on the next tick
        task_info["last_run"] = end_time
        logger.log_keeper_task(name, start_time, end_time, status="failed", details={"error": str(e)})
        raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}") from e

    end_time = time.monotonic()
    task_info["last_run"] = end_time
    details = {"processed": len(result)} if isinstance(result, list) else None
    logger.log_keeper_task(name, start_time, end_time, details=details)
    return result


def get_status():
    """Return current keeper status for monitoring."""
    if not is_keeper_enabled():
        return {"status": "disabled", "reason": "KEEPER_ENABLED=false"}

    return {
        "status": "running" if running else "stopped",
        "tasks": {
            name: {
                "interval_sec": info["interval"],
                "last_run": info["last_run"],
                "next_run": info["last_run"] + info["interval"] if info["last_run"] else None
            }
            for name, info in tasks.items()
        }
    }
