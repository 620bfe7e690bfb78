"""
Lifecycle of the throwaway PostgreSQL container used as the load target.

Everything goes through the ``docker`` CLI. The container is left running
after a run so the loaded database stays reachable; its data directory is
bind-mounted from the host and survives container removal.
"""
from __future__ import annotations

import argparse
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cdm_config import DEFAULT_CONFIG, LogFunc, ReadinessTimeout, console_log, merge_config, require_tools


def container_exists(name: str) -> bool:
    out = subprocess.run(
        ["docker", "ps", "-a", "--format", "{{.Names}}"],
        capture_output=True,
        text=True,
        check=True,
    ).stdout
    return name in [line.strip() for line in out.splitlines()]


def remove_container(name: str, *, log: Optional[LogFunc] = None) -> None:
    emit = log or console_log
    emit(f"Stopping and removing container {name}...")
    # Either step may fail for a container that is already stopped or gone.
    subprocess.run(["docker", "stop", name], capture_output=True, check=False)
    subprocess.run(["docker", "rm", name], capture_output=True, check=False)


def run_command(conf: Dict[str, Any]) -> List[str]:
    pgdata_dir = Path(conf["pgdata_dir"]).expanduser().resolve()
    return [
        "docker",
        "run",
        "-d",
        "--name",
        conf["container_name"],
        "-e",
        f"POSTGRES_USER={conf['user']}",
        "-e",
        f"POSTGRES_PASSWORD={conf['password']}",
        "-p",
        f"{int(conf['port'])}:{int(conf['container_port'])}",
        "-v",
        f"{pgdata_dir}:/var/lib/postgresql/data",
        conf["image"],
    ]


def start_container(conf: Dict[str, Any], *, log: Optional[LogFunc] = None) -> None:
    emit = log or console_log
    Path(conf["pgdata_dir"]).expanduser().mkdir(parents=True, exist_ok=True)
    emit(f"Starting Postgres container: {conf['container_name']} ({conf['image']})")
    subprocess.check_call(run_command(conf), stdout=subprocess.DEVNULL)


def wait_for_postgres(
    name: str,
    user: str,
    *,
    attempts: int = 30,
    interval: float = 1.0,
    log: Optional[LogFunc] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll ``pg_isready`` inside the container; returns the attempt that succeeded."""
    emit = log or console_log
    emit("Waiting for Postgres to be ready...")
    for attempt in range(1, attempts + 1):
        res = subprocess.run(
            ["docker", "exec", name, "pg_isready", "-U", user],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
        if res.returncode == 0:
            emit("Postgres is ready.")
            return attempt
        if attempt < attempts:
            sleep(interval)
    raise ReadinessTimeout(f"Postgres failed to start after {attempts} attempts")


def start_fresh_container(conf: Dict[str, Any], *, log: Optional[LogFunc] = None) -> None:
    emit = log or console_log
    name = conf["container_name"]
    if container_exists(name):
        emit(f"Container {name} already exists. Stopping & removing it...")
        remove_container(name, log=emit)
    start_container(conf, log=emit)
    wait_for_postgres(
        name,
        conf["user"],
        attempts=int(conf.get("ready_attempts", 30)),
        interval=float(conf.get("ready_interval", 1.0)),
        log=emit,
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start or remove the OMOP Postgres container")
    parser.add_argument("action", choices=("start", "remove"), help="Container action")
    parser.add_argument("--name", default=DEFAULT_CONFIG["postgres"]["container_name"], help="Container name")
    parser.add_argument("--port", type=int, default=DEFAULT_CONFIG["postgres"]["port"], help="Host port")
    parser.add_argument("--pgdata-dir", default=DEFAULT_CONFIG["postgres"]["pgdata_dir"], help="Host data directory")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    require_tools(["docker"])
    if args.action == "remove":
        remove_container(args.name)
        return 0
    conf = merge_config(
        DEFAULT_CONFIG["postgres"],
        {"container_name": args.name, "port": args.port, "pgdata_dir": args.pgdata_dir},
    )
    try:
        start_fresh_container(conf)
    except ReadinessTimeout as exc:
        console_log(f"ERROR: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
