"""
Cooperative scheduler for periodic work (the daily maintenance pass).
"""

import threading
import time
from typing import Callable, Dict

from .config import MAINTENANCE_SCHEDULE_SEC, is_heartbeat_enabled, validate_heartbeat_config
from ..util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
running = False
shutdown_event = None


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    issues = validate_heartbeat_config()
    if issues:
        raise ValueError(f"Heartbeat configuration invalid: {issues}")

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
    return list(tasks.keys())


def register_daily_maintenance(interval_sec: int = MAINTENANCE_SCHEDULE_SEC):
    """Schedule the daily maintenance pass."""
    from .maintenance import perform_daily_maintenance
    register_task("daily_maintenance", interval_sec, perform_daily_maintenance)


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
        task_info["func"]()
    except Exception as e:
        duration = time.monotonic() - start_time
        raise RuntimeError(f"Task '{name}' failed after {duration:.2f}s: {e}")
    finally:
        task_info["last_run"] = time.monotonic()

    logger.log_operation(f"heartbeat.{name}", "success", {
        "duration_sec": round(task_info["last_run"] - start_time, 2)
    })


def run_pending():
    """Run every due task once. Failures are isolated per task."""
    for name, task_info in list(tasks.items()):
        if should_run_task(name, task_info):
            try:
                run_task(name, task_info)
            except Exception as e:
                logger.error(f"Heartbeat task '{name}' failed: {e}")


def start(poll_interval_sec: float = 1.0):
    """
    Start the heartbeat loop in the calling thread until stop() is called.
    """
    global running, shutdown_event

    if not is_heartbeat_enabled():
        logger.info("Heartbeat disabled (HEARTBEAT_ENABLED=false). Skipping start.")
        return

    if running:
        raise RuntimeError("Heartbeat already running")

    issues = validate_heartbeat_config()
    if issues:
        raise ValueError(f"Heartbeat configuration invalid: {issues}")

    running = True
    shutdown_event = threading.Event()
    logger.info(f"Starting heartbeat loop with tasks: {list(tasks.keys())}")

    try:
        while running and not shutdown_event.is_set():
            run_pending()
            shutdown_event.wait(poll_interval_sec)
    except KeyboardInterrupt:
        logger.info("Heartbeat interrupted by user")
    finally:
        running = False
        logger.info("Heartbeat loop stopped")


def stop():
    """Stop the heartbeat loop gracefully."""
    global running

    if not running:
        logger.info("Heartbeat not running")
        return

    running = False
    if shutdown_event:
        shutdown_event.set()


def reset_task(name: str):
    """Reset a task's last_run time to force immediate execution."""
    if name in tasks:
        tasks[name]["last_run"] = None


def get_status():
    """Return current heartbeat status for monitoring."""
    if not is_heartbeat_enabled():
        return {"status": "disabled", "reason": "HEARTBEAT_ENABLED=false"}

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
