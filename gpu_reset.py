#!/usr/bin/env python3
"""
GPU Reset - NVIDIA Kernel Module Reload Without Reboot
======================================================

Quiesces everything holding an NVIDIA GPU, unloads the NVIDIA kernel module
stack, loads it again and puts the system back the way it was found.

## PROCEDURE:

1. Detect consumers of the GPU from two independent sources:
   - NVML (nvidia-smi): compute and graphics processes registered with the driver
   - fuser on the GPU's DRM nodes (/dev/dri/cardN, renderDN) and on the
     /dev/nvidia* control nodes
   The second source exists because a compositor on a hybrid (Intel+NVIDIA)
   laptop opens the NVIDIA DRM node without ever showing up in NVML, and that
   open file descriptor pins nvidia_drm.

2. If a display server holds the GPU, the display manager (gdm, sddm, ...)
   has to be stopped. Stopping it tears down the graphical session this tool
   was most likely started from, so the run is first moved into a transient
   systemd unit (systemd-run) which outlives the session.

3. Stop the NVIDIA helper services (persistenced, fabricmanager, dcgm), kill
   compute processes and nvidia-smi watchers, stop the display manager.
   Display servers are never killed directly.

4. Unload modules leaf first:  nvidia_uvm -> nvidia_drm -> nvidia_modeset -> nvidia
   Each module gets one retry. If a module still refuses to go, everything
   unloaded so far is loaded again so the stack is never left half removed.

5. Load modules root first:    nvidia -> nvidia_modeset -> nvidia_drm -> nvidia_uvm

6. Restart every stopped service in reverse order. This happens on every
   exit path (success, failure, Ctrl+C, SIGTERM from systemd). If the driver
   did not come back, the display manager is NOT restarted, since a display
   manager without a driver ends in a login loop.

## LIMITATIONS:
- Display servers are recognised by a fixed list of process names. A
  compositor that is not on the list is treated as a compute process.
- One GPU per run. Unloading the module stack affects every NVIDIA GPU in
  the machine regardless.
- nvidia-smi --gpu-reset is not used, it only works on datacenter parts.

## REQUIREMENTS:
- Root privileges (re-executes itself with sudo)
- systemd (systemctl, systemd-run), fuser (psmisc), modprobe, lsmod
- pip install nvidia-ml-py psutil

License: MIT
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import psutil
import pynvml

# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG = {
    # Paths
    'log_dir': '/tmp',
    'sysfs_drm': '/sys/class/drm',
    'dev_root': '/dev',

    # Timeouts (seconds)
    'query_timeout': 10,
    'service_timeout': 90,
    'module_timeout': 60,

    # Delays (seconds)
    'unload_retry_delay': 2,
    'display_manager_settle': 2,
    'unload_settle': 1,

    # Module configuration
    # Leaf dependents first. Reload walks the same list backwards.
    'nvidia_modules': [
        'nvidia_uvm',
        'nvidia_drm',
        'nvidia_modeset',
        'nvidia',
    ],

    # Services holding the driver open through NVML or the device files
    'services_to_stop': [
        'nvidia-persistenced',
        'nvidia-fabricmanager',
        'nvidia-dcgm',
        'dcgm',
        'dcgm-exporter',
    ],

    # Process names (prefix match) that identify a display server / compositor.
    # Never SIGKILLed; they are released by stopping the display manager.
    'display_process_pattern': r'^(Xorg|X|gnome-shell|kwin|mutter|composit|weston|sway|hyprland|picom)',

    # Units that own the graphical session
    'display_manager_pattern': r'(gdm3?|lightdm|sddm|xdm)\.service',

    # Pollers that keep NVML open without doing any real work
    'watcher_pattern': r'watch.*nvidia-smi',
}

ENV_TS = 'GPU_RESET_TS'
ENV_RESOURCE = 'GPU_RESET_RESOURCE'
ENV_DISPLAY_MANAGER = 'GPU_RESET_DM'
ENV_STOPPED = 'GPU_RESET_STOPPED'
ENV_DETACHED = 'GPU_RESET_DETACHED'

# Critical processes that must never be treated as killable GPU consumers
SYSTEM_PROCESSES = {
    'systemd', 'init', 'kthreadd', 'kworker', 'kswapd',
    'systemd-logind', 'systemd-udevd', 'dbus-daemon', 'dbus-broker',
}


# ============================================================================
# LOGGING SETUP
# ============================================================================

logger = logging.getLogger('gpu-reset')


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """Configure logging with console output and an optional log file"""
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', '%H:%M:%S'))
    logger.addHandler(console)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')
            )
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Cannot write to log file {log_file} ({e}), continuing without file logging")

    return logger


# ============================================================================
# ERRORS
# ============================================================================

class GPUResetError(Exception):
    """Base class for every failure the reset flow knows how to handle"""


class DetectionDegraded(GPUResetError):
    """A consumer detection source failed; treated as 'nothing found there'"""


class StopFailure(GPUResetError):
    """A service could not be stopped"""

    def __init__(self, service: str, detail: str = ""):
        self.service = service
        super().__init__(f"Failed to stop {service}" + (f": {detail}" if detail else ""))


class ReleaseFailure(GPUResetError):
    """A kernel module would not unload, even after the retry"""

    def __init__(self, module: str):
        self.module = module
        super().__init__(f"Cannot unload {module}")


class ReacquireFailure(GPUResetError):
    """A kernel module would not load again"""

    def __init__(self, module: str):
        self.module = module
        super().__init__(f"Cannot load {module}")


class RestoreFailure(GPUResetError):
    """A previously stopped service did not start again"""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Failed to start {service}")


class RunInterrupted(GPUResetError):
    """The run received SIGINT, SIGTERM or SIGHUP"""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Interrupted by {signal.Signals(signum).name}")


# ============================================================================
# DATA CLASSES
# ============================================================================

PCI_ADDRESS_RE = re.compile(r'(?:([0-9a-f]{1,8}):)?([0-9a-f]{2}):([0-9a-f]{2})\.([0-7])')


def normalize_bus_id(bus_id: str) -> str:
    """
    Normalize a PCI address to the sysfs form (0000:01:00.0).
    NVML reports an 8 digit domain (00000000:01:00.0), sysfs a 4 digit one.
    """
    match = PCI_ADDRESS_RE.fullmatch(bus_id.strip().lower())
    if not match:
        raise ValueError(f"Not a PCI address: {bus_id!r}")
    domain, bus, device, function = match.groups()
    return f"{int(domain or '0', 16):04x}:{bus}:{device}.{function}"


@dataclass(frozen=True)
class ResourceHandle:
    """The GPU a run targets. Immutable for the whole run."""
    pci_address: Optional[str] = None
    index: Optional[int] = None
    driver: str = 'nvidia'

    @classmethod
    def parse(cls, text: str) -> 'ResourceHandle':
        text = text.strip()
        if text.isdigit():
            return cls(index=int(text))
        return cls(pci_address=normalize_bus_id(text))

    @property
    def selector(self) -> Optional[str]:
        """Value for nvidia-smi -i"""
        if self.pci_address:
            return self.pci_address
        if self.index is not None:
            return str(self.index)
        return None

    def __str__(self) -> str:
        return self.selector or f"all {self.driver} devices"


class Classification(Enum):
    COMPUTE = "compute"
    DISPLAY_SERVER = "display-server"
    UNKNOWN = "unknown"


@dataclass
class ConsumerRecord:
    """A process holding the GPU"""
    pid: int
    name: Optional[str]
    access_path: str
    classification: Classification
    source: str

    def describe(self) -> str:
        return f"PID {self.pid} ({self.name or '?'}) [{self.classification.value}] via {self.access_path}"

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['classification'] = self.classification.value
        return data


class StopResult(Enum):
    STOPPED = "stopped"
    SKIPPED = "skipped"
    FAILED = "failed"


class BindingState(Enum):
    """Kernel binding state machine of the module stack"""
    BOUND = "bound"
    UNLOADING = "unloading"
    UNLOADED = "unloaded"
    RELOADING = "reloading"
    FAILED = "failed"


class RunOutcome(Enum):
    """Terminal result of a run. The value is the process exit code."""
    SUCCESS = 0
    PARTIAL_UNLOAD_FAILURE = 1
    RELOAD_FAILURE = 2
    ABORTED = 3

    @property
    def exit_code(self) -> int:
        return self.value

    @classmethod
    def from_exit_code(cls, code: int) -> 'RunOutcome':
        for outcome in cls:
            if outcome.value == code:
                return outcome
        return cls.ABORTED


@dataclass
class GPUStatus:
    """Live status of one GPU"""
    index: Optional[int]
    power_draw_w: Optional[float] = None
    utilization_percent: Optional[float] = None
    fan_percent: Optional[float] = None
    pstate: Optional[str] = None

    def describe(self) -> str:
        def fmt(value, suffix):
            return f"{value:g}{suffix}" if value is not None else "N/A"
        return (f"GPU {self.index if self.index is not None else '?'}: "
                f"power {fmt(self.power_draw_w, ' W')}, "
                f"util {fmt(self.utilization_percent, '%')}, "
                f"fan {fmt(self.fan_percent, '%')}, "
                f"{self.pstate or 'P?'}")


@dataclass
class GPUProcessRow:
    """One row of the per-process GPU table (--ps)"""
    gpu_index: Optional[int]
    pid: int
    utilization_percent: Optional[float]
    memory_mb: Optional[float]
    elapsed_seconds: Optional[float]
    command: str

    @property
    def elapsed(self) -> str:
        if self.elapsed_seconds is None:
            return "?"
        seconds = int(self.elapsed_seconds)
        return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"


@dataclass
class DetachedHandle:
    unit: str
    returncode: int


@dataclass
class RunSettings:
    """
    Decisions an invocation starts with. A detached re-launch receives
    them through GPU_RESET_* environment variables.
    """
    ts: str
    resource: Optional[ResourceHandle] = None
    display_manager: Optional[str] = None
    stopped_services: List[str] = field(default_factory=list)
    sudo_user: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None,
                 device: Optional[str] = None) -> 'RunSettings':
        environ = os.environ if environ is None else environ
        resource_text = device or environ.get(ENV_RESOURCE)
        stopped = environ.get(ENV_STOPPED, '')
        return cls(
            ts=environ.get(ENV_TS) or str(int(time.time())),
            resource=ResourceHandle.parse(resource_text) if resource_text else None,
            display_manager=environ.get(ENV_DISPLAY_MANAGER) or None,
            stopped_services=[s for s in stopped.split(',') if s],
            sudo_user=environ.get('SUDO_USER') or None,
        )

    @property
    def log_file(self) -> str:
        return str(Path(CONFIG['log_dir']) / f"gpu-reset-{self.ts}.log")


@dataclass
class RunPlan:
    """What a run is about to do, decided before anything is changed"""
    resource: ResourceHandle
    ts: str
    consumers: List[ConsumerRecord]
    display_manager: Optional[str]
    services: List[str]
    modules: List[str]

    def to_env(self, stopped: List[str], sudo_user: Optional[str] = None) -> Dict[str, str]:
        env = {
            ENV_DETACHED: '1',
            ENV_TS: self.ts,
            ENV_STOPPED: ','.join(stopped),
        }
        if self.resource.selector:
            env[ENV_RESOURCE] = self.resource.selector
        if self.display_manager:
            env[ENV_DISPLAY_MANAGER] = self.display_manager
        if sudo_user:
            env['SUDO_USER'] = sudo_user
        return env

    def describe(self) -> List[str]:
        lines = [f"Target GPU: {self.resource}"]
        if self.consumers:
            lines.append("Consumers:")
            lines.extend(f"  {c.describe()}" for c in self.consumers)
        else:
            lines.append("Consumers: none")
        lines.append(f"Display manager to stop: {self.display_manager or 'none'}")
        lines.append(f"Services to stop if running: {', '.join(self.services)}")
        lines.append(f"Modules (unload order): {' '.join(self.modules)}")
        return lines


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def run_command(
    cmd: List[str],
    timeout: Optional[int] = 60,
    check: bool = True,
    capture: bool = True,
    env: Optional[Dict] = None
) -> subprocess.CompletedProcess:
    """
    Run a command, logging it at debug level.

    Raises CalledProcessError when check is set, TimeoutExpired on timeout
    and OSError when the executable is missing.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(
            cmd,
            timeout=timeout,
            check=check,
            capture_output=capture,
            text=True,
            env=env or os.environ.copy()
        )
    except subprocess.CalledProcessError as e:
        logger.debug(f"Command failed ({e.returncode}): {' '.join(cmd)}")
        if e.stderr:
            logger.debug(f"stderr: {e.stderr.strip()}")
        raise
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        raise


def run_command_safe(cmd: List[str], **kwargs) -> Tuple[bool, str, str]:
    """
    Run a command without raising exceptions.

    Returns:
        Tuple of (success, stdout, stderr)
    """
    try:
        result = run_command(cmd, check=False, **kwargs)
        return result.returncode == 0, result.stdout or "", result.stderr or ""
    except (OSError, subprocess.SubprocessError) as e:
        return False, "", str(e)


def check_root() -> bool:
    return os.geteuid() == 0


def reexec_with_sudo(argv: List[str]) -> None:
    """Replace the current process with the same invocation under sudo"""
    print("Re-executing with sudo...", file=sys.stderr)
    script = str(Path(__file__).resolve())
    os.execvp('sudo', ['sudo', sys.executable, script] + list(argv))


def get_process_name(pid: int) -> Optional[str]:
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def is_system_process(pid: int, name: Optional[str]) -> bool:
    """
    PIDs below 100 are init, kthreadd and kernel threads. Everything in
    SYSTEM_PROCESSES gets restarted by systemd, never killed.
    """
    return pid < 100 or (name or '') in SYSTEM_PROCESSES


# ============================================================================
# NVML / NVIDIA-SMI QUERIES
# ============================================================================

class GPUQuery:
    """
    Resource-management interface of the GPU.
    NVML through pynvml; falls back to nvidia-smi when NVML cannot be used.

    Reference: https://pypi.org/project/nvidia-ml-py/
    """

    def __init__(self):
        self.nvml_available = False
        self._init_nvml()

    def _init_nvml(self):
        try:
            pynvml.nvmlInit()
            self.nvml_available = True
            logger.debug("NVML initialized")
        except pynvml.NVMLError as e:
            logger.debug(f"NVML init failed (driver may not be loaded): {e}")

    def shutdown(self):
        """Release NVML. It keeps /dev/nvidiactl open, which pins the nvidia module."""
        if self.nvml_available:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as e:
                logger.debug(f"NVML shutdown failed: {e}")
            self.nvml_available = False

    def reinit(self):
        self.shutdown()
        self._init_nvml()

    @staticmethod
    def _optional(fn: Callable, *args):
        try:
            return fn(*args)
        except pynvml.NVMLError:
            return None

    @staticmethod
    def _bus_id(handle) -> str:
        bus_id = pynvml.nvmlDeviceGetPciInfo(handle).busId
        if isinstance(bus_id, bytes):
            bus_id = bus_id.decode()
        return normalize_bus_id(bus_id)

    def _handle(self, resource: ResourceHandle):
        if resource.index is not None:
            return pynvml.nvmlDeviceGetHandleByIndex(resource.index)
        if resource.pci_address is None:
            return pynvml.nvmlDeviceGetHandleByIndex(0)
        for i in range(pynvml.nvmlDeviceGetCount()):
            handle = pynvml.nvmlDeviceGetHandleByIndex(i)
            if self._bus_id(handle) == resource.pci_address:
                return handle
        raise DetectionDegraded(f"NVML has no device at {resource.pci_address}")

    def default_bus_id(self) -> Optional[str]:
        """PCI address of NVML device 0, if there is one"""
        if not self.nvml_available:
            return None
        try:
            return self._bus_id(pynvml.nvmlDeviceGetHandleByIndex(0))
        except pynvml.NVMLError as e:
            logger.debug(f"NVML device lookup failed: {e}")
            return None

    def compute_consumers(self, resource: ResourceHandle) -> List[Tuple[int, str]]:
        """
        Processes registered with the driver for this GPU, as (pid, access path).
        Raises DetectionDegraded when neither NVML nor nvidia-smi answer.
        """
        if self.nvml_available:
            try:
                return self._nvml_consumers(resource)
            except pynvml.NVMLError as e:
                logger.debug(f"NVML process enumeration failed: {e}")
        return self._smi_consumers(resource)

    def _nvml_consumers(self, resource: ResourceHandle) -> List[Tuple[int, str]]:
        handle = self._handle(resource)
        path = f"nvml:{self._bus_id(handle)}"
        pids = []
        for proc in pynvml.nvmlDeviceGetComputeRunningProcesses(handle):
            pids.append(proc.pid)
        for proc in self._optional(pynvml.nvmlDeviceGetGraphicsRunningProcesses, handle) or []:
            pids.append(proc.pid)
        return [(pid, path) for pid in dict.fromkeys(pids) if pid > 0]

    def _smi_consumers(self, resource: ResourceHandle) -> List[Tuple[int, str]]:
        cmd = ['nvidia-smi', '--query-compute-apps=pid', '--format=csv,noheader']
        if resource.selector:
            cmd += ['-i', resource.selector]
        success, stdout, stderr = run_command_safe(cmd, timeout=CONFIG['query_timeout'])
        if not success:
            raise DetectionDegraded(f"nvidia-smi failed: {stderr.strip() or 'no output'}")

        path = f"nvidia-smi:{resource.selector or 'all'}"
        consumers = []
        for line in stdout.splitlines():
            line = line.strip()
            if line.isdigit() and int(line) > 0:
                consumers.append((int(line), path))
        return consumers

    def live_status(self, resource: ResourceHandle) -> List[GPUStatus]:
        """Index, power draw, utilization, fan and pstate of the GPU"""
        if self.nvml_available:
            try:
                handle = self._handle(resource)
                power = self._optional(pynvml.nvmlDeviceGetPowerUsage, handle)
                util = self._optional(pynvml.nvmlDeviceGetUtilizationRates, handle)
                pstate = self._optional(pynvml.nvmlDeviceGetPerformanceState, handle)
                return [GPUStatus(
                    index=pynvml.nvmlDeviceGetIndex(handle),
                    power_draw_w=power / 1000.0 if power is not None else None,
                    utilization_percent=util.gpu if util is not None else None,
                    fan_percent=self._optional(pynvml.nvmlDeviceGetFanSpeed, handle),
                    pstate=f"P{pstate}" if pstate is not None else None,
                )]
            except pynvml.NVMLError as e:
                logger.debug(f"NVML status query failed: {e}")

        cmd = ['nvidia-smi', '--query-gpu=index,power.draw,utilization.gpu,fan.speed,pstate',
               '--format=csv,noheader,nounits']
        if resource.selector:
            cmd += ['-i', resource.selector]
        success, stdout, stderr = run_command_safe(cmd, timeout=CONFIG['query_timeout'])
        if not success:
            raise DetectionDegraded(f"nvidia-smi failed: {stderr.strip() or 'no output'}")

        statuses = []
        for line in stdout.splitlines():
            parts = [p.strip() for p in line.split(',')]
            if len(parts) < 5:
                continue
            statuses.append(GPUStatus(
                index=int(parts[0]) if parts[0].isdigit() else None,
                power_draw_w=_parse_float(parts[1]),
                utilization_percent=_parse_float(parts[2]),
                fan_percent=_parse_float(parts[3]),
                pstate=parts[4] or None,
            ))
        return statuses

    def process_table(self) -> List[GPUProcessRow]:
        """Every compute process on every GPU, with GPU load and memory"""
        if self.nvml_available:
            try:
                return self._nvml_process_table()
            except pynvml.NVMLError as e:
                logger.debug(f"NVML process table failed: {e}")
        return self._smi_process_table()

    @staticmethod
    def _process_details(pid: int, now: float) -> Tuple[Optional[float], str]:
        try:
            p = psutil.Process(pid)
            return now - p.create_time(), ' '.join(p.cmdline()) or p.name()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None, ""

    def _nvml_process_table(self) -> List[GPUProcessRow]:
        rows = []
        now = time.time()
        for i in range(pynvml.nvmlDeviceGetCount()):
            handle = pynvml.nvmlDeviceGetHandleByIndex(i)
            util = self._optional(pynvml.nvmlDeviceGetUtilizationRates, handle)
            for proc in pynvml.nvmlDeviceGetComputeRunningProcesses(handle):
                elapsed, command = self._process_details(proc.pid, now)
                rows.append(GPUProcessRow(
                    gpu_index=i,
                    pid=proc.pid,
                    utilization_percent=util.gpu if util is not None else None,
                    memory_mb=proc.usedGpuMemory / (1024 * 1024) if proc.usedGpuMemory else None,
                    elapsed_seconds=elapsed,
                    command=command or "?",
                ))
        return rows

    def _smi_process_table(self) -> List[GPUProcessRow]:
        """Same table from two nvidia-smi queries joined on the GPU UUID"""
        success, stdout, stderr = run_command_safe(
            ['nvidia-smi', '--query-gpu=index,uuid,utilization.gpu', '--format=csv,noheader,nounits'],
            timeout=CONFIG['query_timeout'])
        if not success:
            raise DetectionDegraded(f"nvidia-smi failed: {stderr.strip() or 'no output'}")
        gpus = {}
        for line in stdout.splitlines():
            parts = [p.strip() for p in line.split(',')]
            if len(parts) >= 3:
                gpus[parts[1]] = (int(parts[0]) if parts[0].isdigit() else None, _parse_float(parts[2]))

        success, stdout, stderr = run_command_safe(
            ['nvidia-smi', '--query-compute-apps=pid,process_name,gpu_uuid,used_memory',
             '--format=csv,noheader,nounits'],
            timeout=CONFIG['query_timeout'])
        if not success:
            raise DetectionDegraded(f"nvidia-smi failed: {stderr.strip() or 'no output'}")

        rows = []
        now = time.time()
        for line in stdout.splitlines():
            parts = [p.strip() for p in line.split(',')]
            if len(parts) < 4 or not parts[0].isdigit():
                continue
            pid = int(parts[0])
            index, util = gpus.get(parts[2], (None, None))
            elapsed, command = self._process_details(pid, now)
            rows.append(GPUProcessRow(
                gpu_index=index,
                pid=pid,
                utilization_percent=util,
                memory_mb=_parse_float(parts[3]),
                elapsed_seconds=elapsed,
                command=command or os.path.basename(parts[1]) or "?",
            ))
        return rows

    def disable_persistence(self, resource: ResourceHandle) -> bool:
        """nvidia-smi -pm 0, so the driver is allowed to unload"""
        cmd = ['nvidia-smi', '-pm', '0']
        if resource.selector:
            cmd += ['-i', resource.selector]
        success, _, stderr = run_command_safe(cmd, timeout=CONFIG['query_timeout'])
        if success:
            logger.info("Persistence mode disabled")
        else:
            logger.debug(f"Could not disable persistence mode: {stderr.strip()}")
        return success


def _parse_float(text: str) -> Optional[float]:
    try:
        return float(text)
    except ValueError:
        return None


# ============================================================================
# DEVICE FILE HOLDERS
# ============================================================================

class DeviceHolderQuery:
    """
    OS-level view of who holds the GPU's device files.

    fuser prints PIDs on stdout and the file name and access letters on
    stderr, and exits 1 when nobody holds the file.
    """

    def __init__(self, sysfs_drm: Optional[str] = None, dev_root: Optional[str] = None):
        self.sysfs_drm = Path(sysfs_drm or CONFIG['sysfs_drm'])
        self.dev_root = Path(dev_root or CONFIG['dev_root'])

    def holders(self, path: str) -> List[int]:
        try:
            result = run_command(['fuser', str(path)], timeout=CONFIG['query_timeout'], check=False)
        except (OSError, subprocess.SubprocessError) as e:
            raise DetectionDegraded(f"fuser unavailable: {e}")
        return [int(pid) for pid in re.findall(r'\d+', result.stdout or "")]

    def _cards(self, driver: str) -> Iterator[Path]:
        if not self.sysfs_drm.is_dir():
            return
        for card in sorted(self.sysfs_drm.iterdir(), key=lambda p: p.name):
            # connector entries like card0-DP-1 share the prefix
            if not re.fullmatch(r'card\d+', card.name):
                continue
            try:
                bound_driver = (card / 'device' / 'driver').resolve(strict=True).name
            except OSError:
                continue
            if bound_driver == driver:
                yield card

    def drm_nodes(self, resource: ResourceHandle) -> List[str]:
        """/dev/dri nodes (card and render) of DRM cards bound to the resource's driver"""
        nodes = []
        for card in self._cards(resource.driver):
            if resource.pci_address and (card / 'device').resolve().name != resource.pci_address:
                continue
            nodes.append(str(self.dev_root / 'dri' / card.name))
            render_dir = card / 'device' / 'drm'
            if render_dir.is_dir():
                for render in sorted(render_dir.glob('renderD*')):
                    nodes.append(str(self.dev_root / 'dri' / render.name))
        return nodes

    def pci_addresses(self, driver: str = 'nvidia') -> List[str]:
        return [(card / 'device').resolve().name for card in self._cards(driver)]

    def control_nodes(self) -> List[str]:
        """/dev/nvidiaN, /dev/nvidiactl and the UVM nodes that exist"""
        nodes = sorted(str(p) for p in self.dev_root.glob('nvidia[0-9]*'))
        for name in ('nvidiactl', 'nvidia-uvm', 'nvidia-uvm-tools'):
            path = self.dev_root / name
            if path.exists():
                nodes.append(str(path))
        return nodes


# ============================================================================
# SYSTEMD SERVICES
# ============================================================================

class ServiceManager:
    """Manages systemd services"""

    def is_active(self, service: str) -> bool:
        success, _, _ = run_command_safe(
            ['systemctl', 'is-active', '--quiet', service],
            timeout=CONFIG['query_timeout']
        )
        return success

    def stop(self, service: str) -> bool:
        success, _, stderr = run_command_safe(
            ['systemctl', 'stop', service],
            timeout=CONFIG['service_timeout']
        )
        if not success:
            logger.debug(f"systemctl stop {service}: {stderr.strip()}")
        return success

    def start(self, service: str) -> bool:
        success, _, stderr = run_command_safe(
            ['systemctl', 'start', service],
            timeout=CONFIG['service_timeout']
        )
        if not success:
            logger.debug(f"systemctl start {service}: {stderr.strip()}")
        return success

    def list_running(self, pattern: str) -> List[str]:
        """Running service units whose name matches pattern"""
        success, stdout, _ = run_command_safe(
            ['systemctl', 'list-units', '--type=service', '--state=running',
             '--no-legend', '--plain'],
            timeout=CONFIG['query_timeout']
        )
        if not success:
            return []
        units = []
        for line in stdout.splitlines():
            parts = line.split()
            if parts and re.fullmatch(pattern, parts[0]):
                units.append(parts[0])
        return units


# ============================================================================
# KERNEL MODULES
# ============================================================================

class KernelModuleManager:
    """
    Loads and unloads kernel modules.

    References:
    - https://wiki.archlinux.org/title/Kernel_module
    - https://forums.developer.nvidia.com/t/reset-driver-without-rebooting-on-linux/40625
    """

    def loaded_modules(self) -> List[str]:
        success, stdout, _ = run_command_safe(['lsmod'], timeout=CONFIG['query_timeout'])
        if not success:
            return []
        # first line is the header
        return [line.split()[0] for line in stdout.splitlines()[1:] if line.strip()]

    def is_bound(self, module: str) -> bool:
        wanted = module.replace('-', '_')
        return any(m.replace('-', '_') == wanted for m in self.loaded_modules())

    def unbind(self, module: str) -> bool:
        success, _, stderr = run_command_safe(['modprobe', '-r', module], timeout=CONFIG['module_timeout'])
        if not success:
            logger.debug(f"modprobe -r {module}: {stderr.strip()}")
        return success

    def bind(self, module: str) -> bool:
        success, _, stderr = run_command_safe(['modprobe', module], timeout=CONFIG['module_timeout'])
        if not success:
            logger.debug(f"modprobe {module}: {stderr.strip()}")
        return success


# ============================================================================
# DETACHED EXECUTION
# ============================================================================

class DetachedLauncher:
    """
    Runs a command as a transient systemd service so it outlives the
    session that started it.

    Reference: systemd-run(1)
    """

    def is_detached(self, environ: Optional[Dict[str, str]] = None) -> bool:
        """
        True inside a unit started by run_detached. INVOCATION_ID is set by
        systemd for every service it runs, which also covers a manual
        systemd-run invocation.
        """
        environ = os.environ if environ is None else environ
        return environ.get(ENV_DETACHED) == '1' or bool(environ.get('INVOCATION_ID'))

    def command(self, argv: List[str], env: Dict[str, str], unit: str) -> List[str]:
        # --wait makes systemd-run exit with the service's own exit status
        # instead of 1 for any failed start job
        cmd = ['systemd-run', '--no-ask-password', '--wait', '--collect',
               f'--unit={unit}', '--service-type=oneshot']
        cmd += [f'--setenv={key}={value}' for key, value in sorted(env.items())]
        return cmd + list(argv)

    def run_detached(self, argv: List[str], env: Dict[str, str], unit: str) -> DetachedHandle:
        """Start the unit and wait for the oneshot to finish"""
        cmd = self.command(argv, env, unit)
        try:
            result = run_command(cmd, timeout=None, check=False, capture=False)
        except OSError as e:
            logger.error(f"systemd-run failed: {e}")
            return DetachedHandle(unit=unit, returncode=RunOutcome.ABORTED.exit_code)
        return DetachedHandle(unit=unit, returncode=result.returncode)


# ============================================================================
# CONSUMER DETECTION
# ============================================================================

class ConsumerDetector:
    """
    Finds every process holding the GPU.

    NVML alone is not enough: a compositor rendering on the integrated GPU
    still opens the NVIDIA DRM node, and that never shows up as an NVML
    process. Results of all sources are merged by PID.
    """

    def __init__(
        self,
        resource: ResourceHandle,
        gpu: GPUQuery,
        holders: DeviceHolderQuery,
        name_of: Callable[[int], Optional[str]] = get_process_name,
        self_pid: Optional[int] = None,
    ):
        self.resource = resource
        self.gpu = gpu
        self.holders = holders
        self.name_of = name_of
        self.self_pid = os.getpid() if self_pid is None else self_pid
        self.display_re = re.compile(CONFIG['display_process_pattern'])

    def classify(self, pid: int, name: Optional[str]) -> Classification:
        if name is None or pid == self.self_pid or is_system_process(pid, name):
            return Classification.UNKNOWN
        if self.display_re.match(name):
            return Classification.DISPLAY_SERVER
        return Classification.COMPUTE

    def _from_nvml(self) -> List[Tuple[int, str]]:
        return self.gpu.compute_consumers(self.resource)

    def _from_drm(self) -> List[Tuple[int, str]]:
        found = []
        for node in self.holders.drm_nodes(self.resource):
            found.extend((pid, node) for pid in self.holders.holders(node))
        return found

    def _from_control_nodes(self) -> List[Tuple[int, str]]:
        found = []
        for node in self.holders.control_nodes():
            found.extend((pid, node) for pid in self.holders.holders(node))
        return found

    def detect(self) -> List[ConsumerRecord]:
        providers = [
            ('nvml', self._from_nvml),
            ('drm', self._from_drm),
            ('device-nodes', self._from_control_nodes),
        ]
        records: Dict[int, ConsumerRecord] = {}
        for source, provider in providers:
            try:
                entries = provider()
            except DetectionDegraded as e:
                logger.warning(f"Detection via {source} degraded: {e}")
                continue
            for pid, path in entries:
                if pid in records:
                    continue
                name = self.name_of(pid)
                records[pid] = ConsumerRecord(
                    pid=pid,
                    name=name,
                    access_path=path,
                    classification=self.classify(pid, name),
                    source=source,
                )
                logger.info(f"Consumer: {records[pid].describe()}")
        return sorted(records.values(), key=lambda r: r.pid)


def find_display_manager(consumers: List[ConsumerRecord], services: ServiceManager) -> Optional[str]:
    """The running display manager unit, if a display server holds the GPU"""
    display = [c for c in consumers if c.classification is Classification.DISPLAY_SERVER]
    if not display:
        return None
    for record in display:
        logger.info(f"Display server PID {record.pid} ({record.name}) using GPU via {record.access_path}")
    running = services.list_running(CONFIG['display_manager_pattern'])
    if not running:
        logger.warning(
            "A display server holds the GPU but no known display manager is running; "
            "it is left for the operator to stop"
        )
        return None
    return running[0]


def detect_resource(gpu: GPUQuery, holders: DeviceHolderQuery) -> ResourceHandle:
    """First NVIDIA GPU: NVML device 0, else the first DRM card on the nvidia driver"""
    bus_id = gpu.default_bus_id()
    if bus_id:
        return ResourceHandle(pci_address=bus_id)
    addresses = holders.pci_addresses('nvidia')
    if addresses:
        return ResourceHandle(pci_address=addresses[0])
    logger.warning("Could not identify the NVIDIA GPU, targeting all nvidia devices")
    return ResourceHandle()


# ============================================================================
# SERVICE LEDGER AND RESTORATION
# ============================================================================

class ServiceStopLedger:
    """
    Services this run stopped, in stop order. Append-only; a failed stop is
    never recorded. Restoration replays it backwards.
    """

    def __init__(self, services: ServiceManager, stopped: Optional[List[str]] = None):
        self.services = services
        self._stopped: List[str] = list(stopped or [])

    @property
    def entries(self) -> Tuple[str, ...]:
        return tuple(self._stopped)

    def __len__(self) -> int:
        return len(self._stopped)

    def __contains__(self, service: str) -> bool:
        return service in self._stopped

    def restore_order(self) -> List[str]:
        return list(reversed(self._stopped))

    def stop_if_running(self, service: str) -> StopResult:
        if service in self._stopped or not self.services.is_active(service):
            logger.info(f"Skip {service} (not running)")
            return StopResult.SKIPPED
        logger.info(f"Stopping {service}")
        try:
            self._stop(service)
        except StopFailure as e:
            logger.warning(f"WARNING: {e}")
            return StopResult.FAILED
        self._stopped.append(service)
        return StopResult.STOPPED

    def _stop(self, service: str):
        if not self.services.stop(service):
            raise StopFailure(service)


class RestorationController:
    """
    Restarts every service in the ledger when the with-block exits, on
    success, on error and on interruption.

    The display manager is withheld when the driver did not end up loaded:
    either the run failed to reload it, or it was aborted with modules still
    unloaded. A display manager started against a missing driver loops on the
    login screen.
    """

    def __init__(
        self,
        services: ServiceManager,
        ledger: ServiceStopLedger,
        unload_set: 'ModuleUnloadSet',
        display_manager: Optional[str] = None,
    ):
        self.services = services
        self.ledger = ledger
        self.unload_set = unload_set
        self.display_manager = display_manager
        self.outcome = RunOutcome.ABORTED
        self.restored: List[str] = []
        self.withheld: List[str] = []
        self.failed: List[str] = []

    def __enter__(self) -> 'RestorationController':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            logger.error(f"Run ended with {exc_type.__name__}: {exc}")
        self.restore_all()
        return False

    def withhold_display_manager(self) -> bool:
        if self.outcome is RunOutcome.RELOAD_FAILURE:
            return True
        return self.outcome is RunOutcome.ABORTED and bool(self.unload_set.outstanding)

    def restore_all(self):
        withhold = self.withhold_display_manager()
        for service in self.ledger.restore_order():
            if withhold and service == self.display_manager:
                logger.warning(f"WARNING: NVIDIA driver not loaded, skipping {service} restart to avoid login loop")
                logger.warning(f"Run 'modprobe nvidia && systemctl start {service}' manually after fixing.")
                self.withheld.append(service)
                continue
            logger.info(f"Starting {service}")
            try:
                self._start(service)
            except RestoreFailure as e:
                logger.warning(f"WARNING: {e}")
                self.failed.append(service)
                continue
            self.restored.append(service)

    def _start(self, service: str):
        if not self.services.start(service):
            raise RestoreFailure(service)


class DeferredSignals:
    """
    Records SIGINT/SIGTERM/SIGHUP instead of acting on them at whatever line
    happens to be running. The run calls checkpoint() between steps, where
    the first recorded signal becomes RunInterrupted. Once cleanup has begun
    signals are only logged, so rollback and restoration always finish.
    """

    def __init__(self, signums: Tuple[int, ...] = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)):
        self.signums = signums
        self.received: List[int] = []
        self.cleaning_up = False
        self._previous: Dict[int, object] = {}

    def __enter__(self) -> 'DeferredSignals':
        self._previous = {signum: signal.signal(signum, self._handler) for signum in self.signums}
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        for signum, old in self._previous.items():
            signal.signal(signum, old)
        self._previous = {}
        return False

    def _handler(self, signum, frame):
        name = signal.Signals(signum).name
        if self.cleaning_up or self.received:
            logger.warning(f"Ignoring {name} during cleanup")
            return
        logger.warning(f"Received {name}, stopping at the next safe point")
        self.received.append(signum)

    def checkpoint(self):
        if self.received and not self.cleaning_up:
            self.cleaning_up = True
            raise RunInterrupted(self.received[0])

    def begin_cleanup(self):
        self.cleaning_up = True


# ============================================================================
# PROCESS REAPER
# ============================================================================

class ProcessReaper:
    """
    SIGKILLs compute consumers and nvidia-smi watchers.

    Display servers are never killed: killing Xorg or a compositor leaves
    orphaned VTs and broken compositor state, stopping its display manager
    shuts it down cleanly.
    """

    def __init__(self, self_pid: Optional[int] = None):
        self.self_pid = os.getpid() if self_pid is None else self_pid
        self.watcher_re = re.compile(CONFIG['watcher_pattern'])

    def reap(self, consumers: List[ConsumerRecord]) -> List[int]:
        killed = []
        for record in consumers:
            if record.classification is Classification.DISPLAY_SERVER:
                logger.info(f"Leaving display server PID {record.pid} ({record.name}) to its service")
                continue
            if record.classification is not Classification.COMPUTE or record.pid == self.self_pid:
                logger.info(f"Not killing PID {record.pid} ({record.name or '?'}), classification unknown")
                continue
            logger.info(f"Killing compute process PID {record.pid} ({record.name})")
            if self._kill(record.pid):
                killed.append(record.pid)
        killed.extend(self.reap_watchers())
        return killed

    def reap_watchers(self) -> List[int]:
        killed = []
        for proc in psutil.process_iter(['pid', 'cmdline']):
            cmdline = ' '.join(proc.info.get('cmdline') or [])
            if proc.info['pid'] == self.self_pid or not self.watcher_re.search(cmdline):
                continue
            logger.info(f"Killing watcher PID {proc.info['pid']} ({cmdline})")
            if self._kill(proc.info['pid']):
                killed.append(proc.info['pid'])
        return killed

    def _kill(self, pid: int) -> bool:
        try:
            psutil.Process(pid).kill()
            return True
        except psutil.NoSuchProcess:
            logger.debug(f"PID {pid} already gone")
        except psutil.AccessDenied:
            logger.warning(f"Permission denied killing PID {pid}")
        return False


# ============================================================================
# SESSION ESCAPE
# ============================================================================

class SessionEscapeSupervisor:
    """
    Moves the run out of the interactive session before the display manager
    is stopped. The re-launched run finds GPU_RESET_DETACHED=1 in its
    environment and proceeds instead of escaping again.
    """

    def __init__(self, launcher: DetachedLauncher, argv: Optional[List[str]] = None):
        self.launcher = launcher
        self.argv = list(sys.argv[1:] if argv is None else argv)

    def needs_escape(self, plan: RunPlan) -> bool:
        return bool(plan.display_manager) and not self.launcher.is_detached()

    def escape(self, plan: RunPlan, ledger: ServiceStopLedger,
               sudo_user: Optional[str] = None) -> DetachedHandle:
        unit = f"gpu-reset-{plan.ts}"
        env = plan.to_env(list(ledger.entries), sudo_user)
        logger.info(f"Re-launching as systemd unit {unit} before stopping {plan.display_manager}")
        argv = [sys.executable, str(Path(__file__).resolve())] + self.argv
        handle = self.launcher.run_detached(argv, env, unit)
        logger.info(f"Unit {unit} finished with exit code {handle.returncode}")
        return handle


# ============================================================================
# MODULE RELOAD ENGINE
# ============================================================================

class ModuleUnloadSet:
    """
    Modules this run released (in release order) and the ones it loaded
    again. Rollback works from this record alone.
    """

    def __init__(self, planned: List[str]):
        self.planned = list(planned)
        self.released: List[str] = []
        self.reacquired: List[str] = []

    def record_release(self, module: str):
        self.released.append(module)

    def record_reacquire(self, module: str):
        self.reacquired.append(module)

    @property
    def outstanding(self) -> List[str]:
        """Released and not loaded again, in rollback order"""
        return [m for m in reversed(self.released) if m not in self.reacquired]


class ModuleReloadEngine:
    """
    Unloads the module stack leaf first and loads it root first.

    State machine: BOUND -> UNLOADING -> UNLOADED -> RELOADING -> BOUND | FAILED

    A module that refuses to unload twice stops the unload phase; the modules
    already released are loaded again in reverse so the stack is never left
    half removed.
    """

    def __init__(
        self,
        modules: KernelModuleManager,
        units: Optional[List[str]] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        checkpoint: Callable[[], None] = lambda: None,
    ):
        self.modules = modules
        self.unload_set = ModuleUnloadSet(units or CONFIG['nvidia_modules'])
        self.retry_delay = CONFIG['unload_retry_delay'] if retry_delay is None else retry_delay
        self.sleep = sleep
        # Raises RunInterrupted; only called once the unload set is up to date
        self.checkpoint = checkpoint
        self.state = BindingState.BOUND

    def _set_state(self, state: BindingState):
        logger.debug(f"Binding state: {self.state.value} -> {state.value}")
        self.state = state

    def run(self) -> RunOutcome:
        try:
            self.unload()
        except ReleaseFailure as e:
            logger.error(f"FATAL: {e}")
            if self.rollback():
                logger.error("FATAL: GPU reset failed, could not unload all modules")
                return RunOutcome.PARTIAL_UNLOAD_FAILURE
            logger.error("FATAL: GPU reset failed and the module stack could not be restored")
            return RunOutcome.RELOAD_FAILURE

        try:
            self.reload()
        except ReacquireFailure as e:
            logger.error(f"FATAL: {e}, driver is not loaded")
            self._set_state(BindingState.FAILED)
            return RunOutcome.RELOAD_FAILURE
        return RunOutcome.SUCCESS

    def unload(self):
        self._set_state(BindingState.UNLOADING)
        for module in self.unload_set.planned:
            if not self.modules.is_bound(module):
                logger.info(f"Module {module} not loaded, skipping")
                continue
            try:
                self._release(module)
            except ReleaseFailure:
                if self.modules.is_bound(module):
                    raise
                logger.warning(f"modprobe reported failure but {module} is gone")
            self.unload_set.record_release(module)
            logger.info(f"Unloaded {module}")
            self.checkpoint()
        self._set_state(BindingState.UNLOADED)

    def _release(self, module: str):
        if self.modules.unbind(module):
            return
        if not self.modules.is_bound(module):
            raise ReleaseFailure(module)
        logger.warning(f"WARNING: Failed to unload {module}, retrying...")
        self.sleep(self.retry_delay)
        if not self.modules.unbind(module):
            raise ReleaseFailure(module)

    def rollback(self) -> bool:
        """Load again what this run unloaded, newest first. True if all came back."""
        logger.warning("Restoring partially unloaded modules...")
        complete = True
        for module in self.unload_set.outstanding:
            if self.modules.bind(module):
                self.unload_set.record_reacquire(module)
                logger.info(f"Reloaded {module}")
            else:
                logger.error(f"Could not reload {module}")
                complete = False
        self._set_state(BindingState.BOUND if complete else BindingState.FAILED)
        return complete

    def reload(self):
        self._set_state(BindingState.RELOADING)
        logger.info("Reloading NVIDIA drivers")
        for module in reversed(self.unload_set.planned):
            if not self.modules.bind(module):
                raise ReacquireFailure(module)
            self.unload_set.record_reacquire(module)
            logger.info(f"Loaded {module}")
            self.checkpoint()
        self._set_state(BindingState.BOUND)


# ============================================================================
# MAIN RESET ORCHESTRATOR
# ============================================================================

class GPUResetOrchestrator:
    """
    Runs the complete reset:
    1. Detect consumers and decide whether the display manager must go
    2. Escape into a systemd unit if it must (and we are not in one yet)
    3. Stop NVIDIA services, kill compute processes and watchers
    4. Stop the display manager
    5. Unload and reload the module stack
    6. Restart stopped services (always, see RestorationController)
    """

    def __init__(
        self,
        settings: RunSettings,
        gpu: Optional[GPUQuery] = None,
        holders: Optional[DeviceHolderQuery] = None,
        services: Optional[ServiceManager] = None,
        modules: Optional[KernelModuleManager] = None,
        launcher: Optional[DetachedLauncher] = None,
        reaper: Optional[ProcessReaper] = None,
        name_of: Callable[[int], Optional[str]] = get_process_name,
        argv: Optional[List[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.gpu = gpu or GPUQuery()
        self.holders = holders or DeviceHolderQuery()
        self.services = services or ServiceManager()
        self.modules = modules or KernelModuleManager()
        self.supervisor = SessionEscapeSupervisor(launcher or DetachedLauncher(), argv)
        self.reaper = reaper or ProcessReaper()
        self.sleep = sleep

        self.resource = settings.resource or detect_resource(self.gpu, self.holders)
        self.detector = ConsumerDetector(self.resource, self.gpu, self.holders, name_of=name_of)
        self.ledger = ServiceStopLedger(self.services, settings.stopped_services)
        self.signals = DeferredSignals()
        self.engine = ModuleReloadEngine(self.modules, sleep=sleep, checkpoint=self.signals.checkpoint)
        self.restoration: Optional[RestorationController] = None
        self.escape_handle: Optional[DetachedHandle] = None
        self.killed: List[int] = []

    def plan(self) -> RunPlan:
        logger.info(f"Checking GPU consumers of {self.resource}")
        consumers = self.detector.detect()
        display_manager = self.settings.display_manager
        if display_manager:
            logger.info(f"Display manager {display_manager} passed in by the launching run")
        else:
            display_manager = find_display_manager(consumers, self.services)
        return RunPlan(
            resource=self.resource,
            ts=self.settings.ts,
            consumers=consumers,
            display_manager=display_manager,
            services=list(CONFIG['services_to_stop']),
            modules=list(self.engine.unload_set.planned),
        )

    def run(self) -> RunOutcome:
        plan = self.plan()

        if self.supervisor.needs_escape(plan):
            self.escape_handle = self.supervisor.escape(plan, self.ledger, self.settings.sudo_user)
            return RunOutcome.from_exit_code(self.escape_handle.returncode)

        with self.signals:
            with RestorationController(self.services, self.ledger, self.engine.unload_set,
                                       plan.display_manager) as self.restoration:
                try:
                    outcome = self._execute(plan)
                except RunInterrupted as e:
                    logger.error(f"{e}, cleaning up")
                    outcome = self._abort()
                except Exception as e:
                    self.signals.begin_cleanup()
                    logger.error(f"Unexpected error: {e}")
                    logger.debug("Traceback:", exc_info=True)
                    outcome = self._abort()
                self.signals.begin_cleanup()
                self.restoration.outcome = outcome
        return outcome

    def _execute(self, plan: RunPlan) -> RunOutcome:
        checkpoint = self.signals.checkpoint
        for service in plan.services:
            self.ledger.stop_if_running(service)
            checkpoint()

        self.gpu.disable_persistence(self.resource)
        self.killed = self.reaper.reap(self.detector.detect())
        checkpoint()

        if plan.display_manager:
            self.ledger.stop_if_running(plan.display_manager)
            self.sleep(CONFIG['display_manager_settle'])
            checkpoint()

        logger.info("Unloading NVIDIA drivers")
        self.gpu.shutdown()
        self.sleep(CONFIG['unload_settle'])
        checkpoint()
        outcome = self.engine.run()

        if outcome is RunOutcome.SUCCESS:
            self.report_status()
        return outcome

    def _abort(self) -> RunOutcome:
        """Put back modules an interrupted unload left out"""
        if self.engine.unload_set.outstanding and not self.engine.rollback():
            logger.error("Module stack could not be restored after the interruption")
        return RunOutcome.ABORTED

    def report_status(self):
        """Final confirmation. Best-effort, never changes the outcome."""
        logger.info("GPU Status")
        self.gpu.reinit()
        try:
            for status in self.gpu.live_status(self.resource):
                logger.info(f"  {status.describe()}")
        except DetectionDegraded as e:
            logger.warning(f"Could not read GPU status: {e}")


# ============================================================================
# STATUS / PROCESS LISTING
# ============================================================================

def collect_status(gpu: GPUQuery, holders: DeviceHolderQuery, services: ServiceManager,
                   modules: KernelModuleManager, resource: ResourceHandle) -> Dict:
    try:
        gpus = [asdict(s) for s in gpu.live_status(resource)]
    except DetectionDegraded as e:
        logger.warning(f"Could not read GPU status: {e}")
        gpus = []
    consumers = ConsumerDetector(resource, gpu, holders).detect()
    loaded = [m for m in CONFIG['nvidia_modules'] if modules.is_bound(m)]
    return {
        'resource': str(resource),
        'gpus': gpus,
        'modules_loaded': loaded,
        'consumers': [c.to_dict() for c in consumers],
        'display_manager': find_display_manager(consumers, services),
        'services_running': [s for s in CONFIG['services_to_stop'] if services.is_active(s)],
    }


def print_status(status: Dict):
    print("\n" + "=" * 70)
    print(f"GPU Reset Status - {status['resource']}")
    print("=" * 70)
    for gpu in status['gpus']:
        print(f"  {GPUStatus(**gpu).describe()}")
    print(f"\n{'Loaded Modules:':<25} {', '.join(status['modules_loaded']) or 'None'}")
    print(f"{'Display Manager:':<25} {status['display_manager'] or 'not needed'}")
    print(f"{'Services Running:':<25} {', '.join(status['services_running']) or 'None'}")
    if status['consumers']:
        print(f"\nConsumers ({len(status['consumers'])}):")
        for c in status['consumers']:
            print(f"  PID {c['pid']:<8} {c['name'] or '?':<20} {c['classification']:<15} {c['access_path']}")
    else:
        print("\nNo GPU consumers")
    print("=" * 70 + "\n")


def print_process_table(rows: List[GPUProcessRow]):
    print(f"{'GPU':<4} {'PID':<10} {'UTIL':<6} {'MEM':<10} {'TIME':<10} COMMAND")
    for row in rows:
        util = f"{row.utilization_percent:g}%" if row.utilization_percent is not None else "?"
        mem = f"{row.memory_mb:.0f}MiB" if row.memory_mb is not None else "?"
        gpu = row.gpu_index if row.gpu_index is not None else "?"
        print(f"{gpu:<4} {row.pid:<10} {util:<6} {mem:<10} {row.elapsed:<10} {row.command}")


# ============================================================================
# CLI INTERFACE
# ============================================================================

def device_arg(text: str) -> str:
    """argparse type for --device: an NVML index or a PCI address"""
    try:
        return ResourceHandle.parse(text).selector
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid device {text!r}, expected an index or a PCI address like 0000:01:00.0")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='gpu-reset',
        description='Reset an NVIDIA GPU by reloading the kernel modules - no reboot',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  # Reset the GPU (stops whatever holds it, restarts services afterwards)
  sudo gpu-reset

  # Show what a reset would have to stop
  gpu-reset --dry-run

  # Status and GPU process list
  gpu-reset --status
  gpu-reset --ps

EXIT CODES:
  0  success
  1  a module would not unload (stack restored)
  2  the driver did not load again
  3  aborted
        """
    )

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument('--reset', '-r', action='store_true',
                         help='Reload the NVIDIA kernel modules (default)')
    actions.add_argument('--status', '-s', action='store_true',
                         help='Show GPU status, consumers and loaded modules')
    actions.add_argument('--ps', action='store_true',
                         help='List GPU compute processes')
    actions.add_argument('--dry-run', action='store_true',
                         help='Show what a reset would do without changing anything')

    parser.add_argument('--device', '-d', type=device_arg,
                        help='Target GPU as PCI address (0000:01:00.0) or NVML index')
    parser.add_argument('--json', action='store_true',
                        help='Output status in JSON format')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose output')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)
    settings = RunSettings.from_env(device=args.device)

    if args.ps:
        setup_logging(verbose=args.verbose)
        try:
            print_process_table(GPUQuery().process_table())
        except DetectionDegraded as e:
            logger.error(str(e))
            return 1
        return 0

    if args.status:
        setup_logging(verbose=args.verbose)
        gpu, holders = GPUQuery(), DeviceHolderQuery()
        resource = settings.resource or detect_resource(gpu, holders)
        status = collect_status(gpu, holders, ServiceManager(), KernelModuleManager(), resource)
        if args.json:
            print(json.dumps(status, indent=2, default=str))
        else:
            print_status(status)
        return 0

    if args.dry_run:
        setup_logging(verbose=args.verbose)
        orchestrator = GPUResetOrchestrator(settings, argv=argv)
        print("\n[DRY RUN] A reset would do the following:")
        for line in orchestrator.plan().describe():
            print(f"  {line}")
        return 0

    if not check_root():
        reexec_with_sudo(argv)

    setup_logging(verbose=args.verbose, log_file=settings.log_file)
    logger.info(f"Logging to {settings.log_file}")

    outcome = GPUResetOrchestrator(settings, argv=argv).run()
    if outcome is RunOutcome.SUCCESS:
        logger.info("GPU reset completed")
    else:
        logger.error(f"GPU reset finished with {outcome.name}")
    return outcome.exit_code


if __name__ == '__main__':
    sys.exit(main())
