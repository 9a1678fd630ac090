"""
Heartbeat scheduler - runs periodic engine sweeps (approval expiry and reminders).
Approval expiry is a scheduled transition, not something callers have to remember.
"""

import time
import threading
from typing import Callable, Dict, Optional

from .config import get_sweep_interval, is_approval_sweep_enabled, validate_engine_config
from ..util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
running = False
shutdown_event = None
_thread: Optional[threading.Thread] = None


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call (should be fast and not block)
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    issues = validate_engine_config()
    if issues:
        raise ValueError(f"Engine configuration invalid: {issues}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None
    }

    logger.info(f"Registered heartbeat task '{name}' (every {interval_sec}s)")


def unregister_task(name: str):
    """Remove a task from the registry."""
    if name in tasks:
        del tasks[name]
        logger.info(f"Unregistered heartbeat task '{name}'")


def list_tasks():
    """Return list of registered task names."""
    return list(tasks.keys())


def register_approval_sweeps(engine, interval_sec: Optional[int] = None):
    """Register the expiry and reminder sweeps for an ActionEngine."""
    interval = interval_sec or get_sweep_interval()
    register_task("approval_expiry", interval, engine.expire_approvals)
    register_task("approval_reminders", interval, engine.send_reminders)


def start():
    """
    Run the heartbeat loop in the calling thread until stop() is called.
    Task failures are logged and isolated; the loop keeps going.
    """
    global running, shutdown_event

    if not is_approval_sweep_enabled():
        logger.info("Heartbeat disabled (APPROVAL_SWEEP_ENABLED=false). Skipping start.")
        return

    if running:
        raise RuntimeError("Heartbeat already running")

    issues = validate_engine_config()
    if issues:
        raise ValueError(f"Engine configuration invalid: {issues}")

    running = True
    shutdown_event = threading.Event()

    logger.info(f"Starting heartbeat loop with tasks: {list(tasks.keys())}")

    try:
        while running and not shutdown_event.is_set():
            for name, task_info in list(tasks.items()):
                if should_run_task(name, task_info):
                    try:
                        run_task(name, task_info)
                    except RuntimeError as e:
                        logger.error(f"Heartbeat task '{name}' failed: {e}")

            shutdown_event.wait(0.1)
    except KeyboardInterrupt:
        logger.info("Heartbeat interrupted by user")
    finally:
        running = False
        logger.info("Heartbeat loop stopped")


def start_background() -> Optional[threading.Thread]:
    """Run the heartbeat loop on a daemon thread (used by the API process)."""
    global _thread

    if not is_approval_sweep_enabled():
        logger.info("Heartbeat disabled (APPROVAL_SWEEP_ENABLED=false). Not starting background sweep.")
        return None

    _thread = threading.Thread(target=start, name="heartbeat", daemon=True)
    _thread.start()
    return _thread


def stop(timeout: float = 2.0):
    """Stop the heartbeat loop gracefully."""
    global running

    if not running:
        logger.info("Heartbeat not running")
        return

    logger.info("Stopping heartbeat loop...")
    running = False

    if shutdown_event:
        shutdown_event.set()

    if _thread is not None and _thread is not threading.current_thread():
        _thread.join(timeout)

    logger.info("Heartbeat stopped")


def should_run_task(name: str, task_info: Dict) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True  # Run immediately if never run

    elapsed = time.monotonic() - task_info["last_run"]
    return elapsed >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Execute a task and record timing."""
    start_time = time.monotonic()

    try:
        result = task_info["func"]()
    except Exception as e:
        end_time = time.monotonic()
        task_info["last_run"] = end_time
        logger.log_sweep(name, start_time, end_time, "error", {"error": str(e)})
        raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}") from e

    end_time = time.monotonic()
    task_info["last_run"] = end_time
    logger.log_sweep(name, start_time, end_time, "success", {"result": result})
    return result


def reset_task(name: str):
    """Reset a task's last_run time to force immediate execution."""
    if name in tasks:
        tasks[name]["last_run"] = None
        logger.info(f"Reset heartbeat task '{name}' (will run immediately)")


def get_status():
    """Return current heartbeat status for monitoring."""
    if not is_approval_sweep_enabled():
        return {"status": "disabled", "reason": "APPROVAL_SWEEP_ENABLED=false"}

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
