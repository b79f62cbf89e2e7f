"""
Pytest configuration and shared fixtures for gpu-reset tests.

Provides fakes for NVML, fuser, systemctl, modprobe and systemd-run so the
reset flow can run without a GPU or root.
"""

from typing import Dict, List, Optional, Set

import pytest

import gpu_reset
from gpu_reset import (
    DetachedHandle,
    DetectionDegraded,
    GPUStatus,
    ProcessReaper,
    ResourceHandle,
    RunSettings,
)


RESOURCE = ResourceHandle(pci_address="0000:01:00.0")


# ============ External Interface Fakes ============

class FakeGPU:
    """NVML stand-in"""

    def __init__(self, consumers: Optional[List[int]] = None, fail: bool = False,
                 status_fail: bool = False):
        self.consumers = list(consumers or [])
        self.fail = fail
        self.status_fail = status_fail
        self.calls: List[str] = []

    def compute_consumers(self, resource):
        if self.fail:
            raise DetectionDegraded("nvidia-smi failed: not found")
        return [(pid, f"nvml:{resource.pci_address}") for pid in self.consumers]

    def live_status(self, resource):
        self.calls.append('status')
        if self.status_fail:
            raise DetectionDegraded("nvidia-smi failed")
        return [GPUStatus(index=0, power_draw_w=21.5, utilization_percent=0, fan_percent=30, pstate='P8')]

    def default_bus_id(self):
        return RESOURCE.pci_address

    def disable_persistence(self, resource):
        self.calls.append('persistence-off')
        return True

    def shutdown(self):
        self.calls.append('shutdown')

    def reinit(self):
        self.calls.append('reinit')


class FakeHolders:
    """fuser and /dev, /sys lookups"""

    def __init__(self, drm: Optional[Dict[str, List[int]]] = None,
                 nodes: Optional[Dict[str, List[int]]] = None, fail: bool = False):
        self.drm = drm or {}
        self.nodes = nodes or {}
        self.fail = fail

    def drm_nodes(self, resource):
        return list(self.drm)

    def control_nodes(self):
        return list(self.nodes)

    def holders(self, path):
        if self.fail:
            raise DetectionDegraded("fuser unavailable")
        return list({**self.drm, **self.nodes}.get(path, []))

    def pci_addresses(self, driver='nvidia'):
        return [RESOURCE.pci_address]


class FakeServices:
    """systemctl with a set of active units"""

    def __init__(self, active: Optional[Set[str]] = None, fail_stop: Optional[Set[str]] = None,
                 fail_start: Optional[Set[str]] = None):
        self.active = set(active or ())
        self.fail_stop = set(fail_stop or ())
        self.fail_start = set(fail_start or ())
        self.stopped: List[str] = []
        self.started: List[str] = []

    def is_active(self, service):
        return service in self.active

    def stop(self, service):
        if service in self.fail_stop:
            return False
        self.active.discard(service)
        self.stopped.append(service)
        return True

    def start(self, service):
        self.started.append(service)
        if service in self.fail_start:
            return False
        self.active.add(service)
        return True

    def list_running(self, pattern):
        import re
        return sorted(s for s in self.active if re.fullmatch(pattern, s))


class FakeModules:
    """lsmod/modprobe. unbind_failures counts failed attempts per module."""

    def __init__(self, loaded: Optional[List[str]] = None,
                 unbind_failures: Optional[Dict[str, int]] = None,
                 bind_failures: Optional[Set[str]] = None):
        self.loaded = set(loaded if loaded is not None else gpu_reset.CONFIG['nvidia_modules'])
        self.unbind_failures = dict(unbind_failures or {})
        self.bind_failures = set(bind_failures or ())
        self.calls: List[tuple] = []

    def is_bound(self, module):
        return module in self.loaded

    def unbind(self, module):
        self.calls.append(('unbind', module))
        if self.unbind_failures.get(module, 0) > 0:
            self.unbind_failures[module] -= 1
            return False
        self.loaded.discard(module)
        return True

    def bind(self, module):
        self.calls.append(('bind', module))
        if module in self.bind_failures:
            return False
        self.loaded.add(module)
        return True

    def binds(self):
        return [m for op, m in self.calls if op == 'bind']

    def unbinds(self):
        return [m for op, m in self.calls if op == 'unbind']


class FakeLauncher:
    """systemd-run; records launches instead of starting units"""

    def __init__(self, detached: bool = False, returncode: int = 0):
        self.detached = detached
        self.returncode = returncode
        self.launches: List[dict] = []

    def is_detached(self, environ=None):
        return self.detached

    def run_detached(self, argv, env, unit):
        self.launches.append({'argv': argv, 'env': env, 'unit': unit})
        return DetachedHandle(unit=unit, returncode=self.returncode)


class RecordingReaper(ProcessReaper):
    """ProcessReaper that records kills instead of sending signals"""

    def __init__(self):
        super().__init__(self_pid=1)
        self.signalled: List[int] = []

    def _kill(self, pid):
        self.signalled.append(pid)
        return True

    def reap_watchers(self):
        return []


PROCESS_NAMES = {
    1234: 'python3',
    1300: 'ollama',
    2000: 'gnome-shell',
    2001: 'Xorg',
    2002: 'Xwayland',
    150: 'systemd-logind',
}


def name_of(pid):
    return PROCESS_NAMES.get(pid)


# ============ Fixtures ============

@pytest.fixture
def settings():
    return RunSettings(ts='1700000000', resource=RESOURCE)


@pytest.fixture
def make_orchestrator(settings):
    """Build an orchestrator wired to fakes; returns it plus the fakes"""

    def _make(gpu=None, holders=None, services=None, modules=None, launcher=None,
              run_settings=None):
        fakes = {
            'gpu': gpu or FakeGPU(),
            'holders': holders or FakeHolders(),
            'services': services or FakeServices(),
            'modules': modules or FakeModules(),
            'launcher': launcher or FakeLauncher(),
            'reaper': RecordingReaper(),
        }
        orchestrator = gpu_reset.GPUResetOrchestrator(
            run_settings or settings,
            name_of=name_of,
            argv=['--reset'],
            sleep=lambda seconds: None,
            **fakes,
        )
        return orchestrator, fakes

    return _make
