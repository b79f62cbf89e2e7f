"""
End-to-end tests of the reset flow against fake system interfaces.
"""

import logging
import signal

import pytest

import gpu_reset
from gpu_reset import RunOutcome, RunSettings
from conftest import RESOURCE, FakeGPU, FakeHolders, FakeLauncher, FakeModules, FakeServices


NVIDIA_SERVICES = ['nvidia-persistenced', 'nvidia-fabricmanager']


def warnings_in(caplog):
    return [r for r in caplog.records if r.levelno >= logging.WARNING]


class TestScenarios:
    """The reference scenarios of the reset flow."""

    def test_no_consumers_clean_reload(self, make_orchestrator, caplog):
        orchestrator, fakes = make_orchestrator()

        outcome = orchestrator.run()

        assert outcome is RunOutcome.SUCCESS
        assert outcome.exit_code == 0
        assert len(orchestrator.ledger) == 0
        assert fakes['modules'].unbinds() == ['nvidia_uvm', 'nvidia_drm', 'nvidia_modeset', 'nvidia']
        assert fakes['modules'].binds() == ['nvidia', 'nvidia_modeset', 'nvidia_drm', 'nvidia_uvm']
        assert warnings_in(caplog) == []

    def test_compute_consumer_is_killed(self, make_orchestrator):
        orchestrator, fakes = make_orchestrator(gpu=FakeGPU(consumers=[1234]))

        assert orchestrator.run() is RunOutcome.SUCCESS
        assert fakes['reaper'].signalled == [1234]
        assert orchestrator.killed == [1234]
        assert fakes['launcher'].launches == []

    def test_display_server_on_drm_node_triggers_escape(self, make_orchestrator):
        orchestrator, fakes = make_orchestrator(
            holders=FakeHolders(drm={'/dev/dri/card1': [2000]}),
            services=FakeServices(active={'gdm.service', 'nvidia-persistenced'}),
        )

        outcome = orchestrator.run()

        assert outcome is RunOutcome.SUCCESS
        [launch] = fakes['launcher'].launches
        assert launch['unit'] == 'gpu-reset-1700000000'
        assert launch['argv'][-1] == '--reset'
        assert launch['env'] == {
            'GPU_RESET_DETACHED': '1',
            'GPU_RESET_TS': '1700000000',
            'GPU_RESET_STOPPED': '',
            'GPU_RESET_RESOURCE': RESOURCE.pci_address,
            'GPU_RESET_DM': 'gdm.service',
        }
        # nothing was touched before the escape
        assert fakes['services'].stopped == []
        assert fakes['modules'].calls == []
        assert fakes['reaper'].signalled == []

    def test_unload_failure_rolls_back(self, make_orchestrator):
        services = FakeServices(active={'nvidia-persistenced'})
        orchestrator, fakes = make_orchestrator(
            services=services,
            modules=FakeModules(unbind_failures={'nvidia_drm': 2}),
        )

        outcome = orchestrator.run()

        assert outcome is RunOutcome.PARTIAL_UNLOAD_FAILURE
        assert outcome.exit_code != 0
        assert fakes['modules'].unbinds() == ['nvidia_uvm', 'nvidia_drm', 'nvidia_drm']
        assert fakes['modules'].binds() == ['nvidia_uvm']
        assert services.started == ['nvidia-persistenced']
        assert fakes['gpu'].calls.count('status') == 0

    def test_reload_failure_withholds_display_manager(self, make_orchestrator, caplog):
        services = FakeServices(active={'gdm.service', 'nvidia-persistenced', 'dcgm'})
        orchestrator, fakes = make_orchestrator(
            holders=FakeHolders(drm={'/dev/dri/card1': [2000]}),
            services=services,
            modules=FakeModules(bind_failures={'nvidia_modeset'}),
            launcher=FakeLauncher(detached=True),
        )

        outcome = orchestrator.run()

        assert outcome is RunOutcome.RELOAD_FAILURE
        assert services.stopped == ['nvidia-persistenced', 'dcgm', 'gdm.service']
        assert services.started == ['dcgm', 'nvidia-persistenced']
        assert orchestrator.restoration.withheld == ['gdm.service']
        assert "systemctl start gdm.service" in caplog.text
        assert fakes['reaper'].signalled == []


class TestDetachedRun:
    """Tests for a run that is already inside the systemd unit."""

    def test_display_manager_stopped_last_and_restored_first(self, make_orchestrator):
        services = FakeServices(active={'gdm.service', 'nvidia-persistenced'})
        orchestrator, fakes = make_orchestrator(
            holders=FakeHolders(drm={'/dev/dri/card1': [2000]}),
            services=services,
            launcher=FakeLauncher(detached=True),
        )

        assert orchestrator.run() is RunOutcome.SUCCESS
        assert fakes['launcher'].launches == []
        assert services.stopped == ['nvidia-persistenced', 'gdm.service']
        assert services.started == ['gdm.service', 'nvidia-persistenced']
        assert 2000 not in fakes['reaper'].signalled

    def test_display_manager_from_environment(self, make_orchestrator):
        run_settings = RunSettings(ts='1700000000', resource=RESOURCE, display_manager='sddm.service')
        services = FakeServices(active={'sddm.service'})
        orchestrator, _ = make_orchestrator(
            services=services,
            launcher=FakeLauncher(detached=True),
            run_settings=run_settings,
        )

        assert orchestrator.run() is RunOutcome.SUCCESS
        assert services.stopped == ['sddm.service']
        assert services.started == ['sddm.service']

    def test_escape_result_becomes_outcome(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(
            holders=FakeHolders(drm={'/dev/dri/card1': [2001]}),
            services=FakeServices(active={'lightdm.service'}),
            launcher=FakeLauncher(returncode=2),
        )
        assert orchestrator.run() is RunOutcome.RELOAD_FAILURE


class SignallingModules(FakeModules):
    """Delivers SIGTERM while a given module is being unloaded"""

    def __init__(self, at, **kwargs):
        super().__init__(**kwargs)
        self.at = at

    def unbind(self, module):
        if module == self.at:
            signal.raise_signal(signal.SIGTERM)
        return super().unbind(module)


class KilledModprobeModules(SignallingModules):
    """modprobe -r killed by the signal after the kernel already removed the module"""

    def unbind(self, module):
        if module != self.at:
            return super().unbind(module)
        signal.raise_signal(signal.SIGTERM)
        self.calls.append(('unbind', module))
        self.loaded.discard(module)
        return False


class SignallingServices(FakeServices):
    """Delivers SIGTERM on the first start, or while stopping a given service"""

    def __init__(self, stop_signal_at=None, **kwargs):
        super().__init__(**kwargs)
        self.stop_signal_at = stop_signal_at

    def stop(self, service):
        if service == self.stop_signal_at:
            signal.raise_signal(signal.SIGTERM)
        return super().stop(service)

    def start(self, service):
        if self.stop_signal_at is None and not self.started:
            signal.raise_signal(signal.SIGTERM)
        return super().start(service)


class TestInterruption:
    """Tests for cleanup on signals and unexpected errors."""

    def test_sigterm_mid_unload_rolls_back_and_restores(self, make_orchestrator):
        services = FakeServices(active={'gdm.service', 'nvidia-persistenced'})
        modules = SignallingModules(at='nvidia_drm')
        orchestrator, _ = make_orchestrator(
            holders=FakeHolders(drm={'/dev/dri/card1': [2000]}),
            services=services,
            modules=modules,
            launcher=FakeLauncher(detached=True),
        )

        outcome = orchestrator.run()

        assert outcome is RunOutcome.ABORTED
        # the module being unloaded when the signal came is rolled back too
        assert modules.binds() == ['nvidia_drm', 'nvidia_uvm']
        assert modules.loaded == set(gpu_reset.CONFIG['nvidia_modules'])
        assert services.started == ['gdm.service', 'nvidia-persistenced']

    def test_sigterm_with_failed_rollback_withholds_display_manager(self, make_orchestrator):
        services = FakeServices(active={'gdm.service', 'nvidia-persistenced'})
        modules = SignallingModules(at='nvidia_modeset', bind_failures={'nvidia_drm'})
        orchestrator, _ = make_orchestrator(
            holders=FakeHolders(drm={'/dev/dri/card1': [2000]}),
            services=services,
            modules=modules,
            launcher=FakeLauncher(detached=True),
        )

        assert orchestrator.run() is RunOutcome.ABORTED
        assert services.started == ['nvidia-persistenced']
        assert orchestrator.restoration.withheld == ['gdm.service']

    def test_module_gone_although_modprobe_was_killed(self, make_orchestrator):
        services = FakeServices(active={'gdm.service'})
        modules = KilledModprobeModules(at='nvidia_drm')
        orchestrator, _ = make_orchestrator(
            holders=FakeHolders(drm={'/dev/dri/card1': [2000]}),
            services=services,
            modules=modules,
            launcher=FakeLauncher(detached=True),
        )

        assert orchestrator.run() is RunOutcome.ABORTED
        assert modules.binds() == ['nvidia_drm', 'nvidia_uvm']
        assert modules.loaded == set(gpu_reset.CONFIG['nvidia_modules'])
        assert orchestrator.engine.unload_set.outstanding == []
        assert services.started == ['gdm.service']

    def test_sigterm_during_restore_restarts_every_service(self, make_orchestrator):
        services = SignallingServices(active={'nvidia-persistenced', 'dcgm'})
        orchestrator, _ = make_orchestrator(services=services)

        outcome = orchestrator.run()

        assert outcome is RunOutcome.SUCCESS
        assert services.started == ['dcgm', 'nvidia-persistenced']
        assert orchestrator.restoration.restored == ['dcgm', 'nvidia-persistenced']

    def test_sigterm_between_service_stops(self, make_orchestrator):
        services = SignallingServices(active={'nvidia-persistenced', 'dcgm'}, stop_signal_at='nvidia-persistenced')
        orchestrator, fakes = make_orchestrator(services=services)

        assert orchestrator.run() is RunOutcome.ABORTED
        # stopped before the interruption took effect, and restarted
        assert services.stopped == ['nvidia-persistenced']
        assert services.started == ['nvidia-persistenced']
        assert fakes['modules'].calls == []

    def test_unexpected_error_still_restores(self, make_orchestrator):
        class BrokenGPU(FakeGPU):
            def disable_persistence(self, resource):
                raise RuntimeError("nvidia-smi exploded")

        services = FakeServices(active={'nvidia-persistenced'})
        orchestrator, fakes = make_orchestrator(gpu=BrokenGPU(), services=services)

        assert orchestrator.run() is RunOutcome.ABORTED
        assert services.started == ['nvidia-persistenced']
        assert fakes['modules'].calls == []

    def test_signal_handlers_restored_after_run(self, make_orchestrator):
        before = signal.getsignal(signal.SIGTERM)
        orchestrator, _ = make_orchestrator()
        orchestrator.run()
        assert signal.getsignal(signal.SIGTERM) is before


class TestStatusReport:
    """Tests for the final best-effort status."""

    def test_nvml_released_before_unload_and_status_reported(self, make_orchestrator):
        orchestrator, fakes = make_orchestrator()
        orchestrator.run()
        assert fakes['gpu'].calls == ['persistence-off', 'shutdown', 'reinit', 'status']

    def test_status_failure_does_not_change_outcome(self, make_orchestrator, caplog):
        orchestrator, _ = make_orchestrator(gpu=FakeGPU(status_fail=True))
        assert orchestrator.run() is RunOutcome.SUCCESS
        assert "Could not read GPU status" in caplog.text


class TestPlan:
    """Tests for the dry-run plan."""

    def test_plan_lists_consumers_and_display_manager(self, make_orchestrator):
        orchestrator, fakes = make_orchestrator(
            gpu=FakeGPU(consumers=[1234]),
            holders=FakeHolders(drm={'/dev/dri/card1': [2000]}),
            services=FakeServices(active={'gdm.service'}),
        )

        plan = orchestrator.plan()
        text = '\n'.join(plan.describe())

        assert plan.display_manager == 'gdm.service'
        assert [c.pid for c in plan.consumers] == [1234, 2000]
        assert "PID 2000 (gnome-shell) [display-server]" in text
        assert "nvidia_uvm nvidia_drm nvidia_modeset nvidia" in text
        assert fakes['services'].stopped == []
        assert fakes['modules'].calls == []
