"""Periodic CPU, memory, disk and network telemetry of connected hosts."""

import threading
import time
from datetime import datetime
from typing import Dict, Optional, Tuple

from .config import Config
from .connection_manager import ConnectionManager
from .exceptions import NotConnected, SSHCodeError
from .executor import CommandExecutor
from .logger import Logger
from .models import Connection, ConnectionStatus, NetworkHistory

CPU_COMMAND = "cat /proc/stat"
MEMORY_COMMAND = "cat /proc/meminfo"
DISK_COMMAND = "df -P /"
NETWORK_COMMAND = "cat /proc/net/dev"


def parse_proc_stat(text: str) -> Tuple[int, int]:
    """Return cumulative ``(busy, total)`` jiffies from the aggregate cpu line."""
    for line in text.splitlines():
        fields = line.split()
        if fields and fields[0] == "cpu":
            # user nice system idle iowait irq softirq steal; guest is counted in user
            values = [int(value) for value in fields[1:9]]
            if len(values) < 4:
                break
            total = sum(values)
            idle = values[3] + (values[4] if len(values) > 4 else 0)
            return total - idle, total
    raise ValueError("No aggregate cpu line in /proc/stat output")


def parse_meminfo(text: str) -> float:
    """Used memory percentage from /proc/meminfo."""
    values: Dict[str, int] = {}
    for line in text.splitlines():
        name, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            values[name.strip()] = int(parts[0])

    total = values.get("MemTotal")
    if not total:
        raise ValueError("MemTotal missing from /proc/meminfo output")
    available = values.get("MemAvailable")
    if available is None:
        available = values.get("MemFree", 0) + values.get("Buffers", 0) + values.get("Cached", 0)
    return round(100.0 * (total - available) / total, 1)


def parse_df(text: str) -> float:
    """Capacity percentage of the last row of ``df -P`` output."""
    rows = [line.split() for line in text.strip().splitlines()[1:] if line.strip()]
    if not rows or len(rows[-1]) < 5:
        raise ValueError("Unexpected df output")
    capacity = rows[-1][-2]
    if not capacity.endswith("%"):
        raise ValueError(f"Unexpected df capacity column: {capacity}")
    return float(capacity[:-1])


def parse_net_dev(text: str) -> Tuple[int, int]:
    """Return ``(received, transmitted)`` bytes summed over non-loopback interfaces."""
    received = transmitted = 0
    found = False
    for line in text.splitlines():
        if ":" not in line:
            continue
        name, _, counters = line.partition(":")
        if name.strip() == "lo":
            continue
        fields = counters.split()
        if len(fields) < 9:
            continue
        received += int(fields[0])
        transmitted += int(fields[8])
        found = True
    if not found:
        raise ValueError("No interfaces in /proc/net/dev output")
    return received, transmitted


def compute_rate(current: int, previous: int, elapsed: float) -> float:
    """Bytes per second; counter resets clamp to zero."""
    if elapsed <= 0:
        return 0.0
    return float(round(max(0, current - previous) / elapsed))


class SystemMonitor:
    """Runs one probe thread per connected connection."""

    def __init__(self, config: Config, manager: ConnectionManager, executor: CommandExecutor):
        self.config = config
        self.manager = manager
        self.executor = executor
        self.logger = Logger.get_logger(__name__)
        self.interval = config.monitor_interval
        self.probe_timeout = max(5.0, config.monitor_interval * 2)

        self._threads: Dict[str, Tuple[threading.Thread, threading.Event]] = {}
        self._cpu_samples: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    def start(self, connection: Connection):
        """Start monitoring; a second start for the same id is a no-op."""
        with self._lock:
            if connection.id in self._threads:
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._monitor_loop,
                args=(connection, stop_event),
                name=f"monitor-{connection.id}",
                daemon=True,
            )
            self._threads[connection.id] = (thread, stop_event)
        thread.start()
        self.logger.debug(f"System monitor started for {connection.id}")

    def stop(self, connection_id: str):
        with self._lock:
            entry = self._threads.pop(connection_id, None)
            self._cpu_samples.pop(connection_id, None)
        if entry is None:
            return
        thread, stop_event = entry
        stop_event.set()
        if thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=self.probe_timeout + 1)
        self.logger.debug(f"System monitor stopped for {connection_id}")

    def stop_all(self):
        with self._lock:
            ids = list(self._threads)
        for connection_id in ids:
            self.stop(connection_id)

    def is_running(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._threads

    def _monitor_loop(self, connection: Connection, stop_event: threading.Event):
        while not stop_event.is_set() and connection.status == ConnectionStatus.CONNECTED:
            try:
                self.probe(connection)
            except NotConnected as e:
                self.logger.info(f"System monitor for {connection.id} ending: {e}")
                break
            except Exception as e:
                self.logger.error(f"Error probing {connection.id}: {e}")
            if stop_event.wait(self.interval):
                break

        with self._lock:
            entry = self._threads.get(connection.id)
            if entry is not None and entry[1] is stop_event:
                del self._threads[connection.id]
                self._cpu_samples.pop(connection.id, None)

    def probe(self, connection: Connection):
        """Refresh ``connection.system_info``; a failing part keeps its old value."""
        info = connection.system_info
        refreshed = False

        cpu_output = self._run(connection, CPU_COMMAND)
        if cpu_output is not None:
            try:
                info.cpu = self._cpu_percent(connection.id, *parse_proc_stat(cpu_output))
                refreshed = True
            except ValueError as e:
                self.logger.debug(f"Unparseable /proc/stat from {connection.id}: {e}")

        memory_output = self._run(connection, MEMORY_COMMAND)
        if memory_output is not None:
            try:
                info.memory = parse_meminfo(memory_output)
                refreshed = True
            except ValueError as e:
                self.logger.debug(f"Unparseable /proc/meminfo from {connection.id}: {e}")

        disk_output = self._run(connection, DISK_COMMAND)
        if disk_output is not None:
            try:
                info.disk = parse_df(disk_output)
                refreshed = True
            except ValueError as e:
                self.logger.debug(f"Unparseable df output from {connection.id}: {e}")

        network_output = self._run(connection, NETWORK_COMMAND)
        if network_output is not None:
            try:
                self._update_network(connection, *parse_net_dev(network_output))
                refreshed = True
            except ValueError as e:
                self.logger.debug(f"Unparseable /proc/net/dev from {connection.id}: {e}")

        if refreshed:
            info.last_update = datetime.now()

    def _run(self, connection: Connection, command: str) -> Optional[str]:
        try:
            result = self.executor.execute(connection.id, command, timeout=self.probe_timeout)
        except NotConnected:
            raise
        except SSHCodeError as e:
            self.logger.debug(f"Probe '{command}' failed on {connection.id}: {e}")
            return None
        if result.exit_code != 0:
            self.logger.debug(f"Probe '{command}' exited {result.exit_code} on {connection.id}")
            return None
        return result.output

    def _cpu_percent(self, connection_id: str, busy: int, total: int) -> float:
        with self._lock:
            previous = self._cpu_samples.get(connection_id)
            self._cpu_samples[connection_id] = (busy, total)
        if previous is not None and total > previous[1]:
            busy_delta = max(0, busy - previous[0])
            return round(100.0 * busy_delta / (total - previous[1]), 1)
        return round(100.0 * busy / total, 1) if total else 0.0

    def _update_network(self, connection: Connection, received: int, transmitted: int):
        now = time.monotonic()
        history = connection.network_history
        info = connection.system_info
        if history is not None:
            elapsed = now - history.last_update_time
            info.network_down = compute_rate(received, history.last_network_down, elapsed)
            info.network_up = compute_rate(transmitted, history.last_network_up, elapsed)
        connection.network_history = NetworkHistory(
            last_network_down=received,
            last_network_up=transmitted,
            last_update_time=now,
        )
