from __future__ import annotations

import os
import threading

import pytest

from conftest import BlockingExecutor, FakeProvisioner, RecordingExecutor, build_policy
from matrixci.dsl import define_policy, elevated, job, platform_is, sh
from matrixci.errors import ConfigurationError
from matrixci.executor import ShellExecutor, preserved_env
from matrixci.matrix import expand
from matrixci.model import EventKind, Outcome, StepStatus, TriggerEvent
from matrixci.provision import Workspace
from matrixci.runner import orchestrate, run_all, run_instance

PUSH = TriggerEvent(kind=EventKind.PUSH)


def _statuses(instance):
    return {rec.name: rec.status for rec in instance.records}


def _run(policy, provisioner, executor, console, event=PUSH):
    return orchestrate(policy, event, provisioner=provisioner, executor=executor, console=console)


def test_all_platforms_succeed(canonical_policy, provisioner, console):
    report = _run(canonical_policy, provisioner, RecordingExecutor(), console)

    assert report.outcomes == {
        "linux": Outcome.SUCCEEDED,
        "windows": Outcome.SUCCEEDED,
        "macos": Outcome.SUCCEEDED,
    }
    assert list(report.outcomes) == ["linux", "windows", "macos"]
    assert report.failed is False


def test_windows_build_failure_leaves_other_platforms_alone(canonical_policy, provisioner, console):
    def rule(platform, cmd):
        return 101 if platform == "windows" and cmd.startswith("cargo build") else 0

    report = _run(canonical_policy, provisioner, RecordingExecutor(rule), console)

    assert report.outcomes == {
        "linux": Outcome.SUCCEEDED,
        "windows": Outcome.FAILED,
        "macos": Outcome.SUCCEEDED,
    }
    assert report.failed is True

    windows = _statuses(report.instances["windows"])
    assert windows["Checkout"] is StepStatus.SUCCEEDED
    assert windows["Build"] is StepStatus.FAILED
    assert windows["Run tests"] is StepStatus.NOT_RUN
    assert windows["Run tests (macos)"] is StepStatus.NOT_RUN
    assert report.instances["windows"].record("Build").exit_code == 101


def test_failure_does_not_change_sibling_instances(canonical_policy, tmp_path, console):
    clean = _run(canonical_policy, FakeProvisioner(tmp_path / "a"), RecordingExecutor(), console)

    broken_exec = RecordingExecutor(lambda p, c: 1 if p == "windows" and "build" in c else 0)
    broken = _run(canonical_policy, FakeProvisioner(tmp_path / "b"), broken_exec, console)

    for platform in ("linux", "macos"):
        assert _statuses(broken.instances[platform]) == _statuses(clean.instances[platform])
        assert broken.instances[platform].outcome is Outcome.SUCCEEDED
        assert [c.cmd for c in broken_exec.for_platform(platform)] == [
            "cargo build --verbose --all-targets",
            "cargo test --verbose",
        ]


def test_macos_runs_elevated_tests_with_same_path(canonical_policy, provisioner, console):
    executor = RecordingExecutor()
    report = _run(canonical_policy, provisioner, executor, console)

    macos = _statuses(report.instances["macos"])
    assert macos["Run tests"] is StepStatus.SKIPPED
    assert macos["Run tests (macos)"] is StepStatus.SUCCEEDED

    build, tests = executor.for_platform("macos")
    assert build.elevation is None
    assert tests.elevation is not None
    assert tests.elevation.preserve == ("PATH", "CARGO_TERM_COLOR")
    assert preserved_env(tests.env, tests.elevation)["PATH"] == build.env["PATH"]
    assert tests.env["CARGO_TERM_COLOR"] == "always"


@pytest.mark.parametrize("platform", ["linux", "windows", "macos"])
def test_exactly_one_test_step_runs(canonical_policy, provisioner, console, platform):
    report = _run(canonical_policy, provisioner, RecordingExecutor(), console)
    statuses = _statuses(report.instances[platform])

    ran = [n for n in ("Run tests", "Run tests (macos)") if statuses[n] is StepStatus.SUCCEEDED]
    skipped = [n for n in ("Run tests", "Run tests (macos)") if statuses[n] is StepStatus.SKIPPED]
    assert len(ran) == 1 and len(skipped) == 1
    assert (ran == ["Run tests (macos)"]) == (platform == "macos")


def test_failed_step_short_circuits_instance(provisioner, console):
    policy = define_policy(
        job("chain", sh("one", "step-1"), sh("two", "step-2"), sh("three", "step-3")),
        platforms=["linux"],
    )
    executor = RecordingExecutor(lambda p, c: 2 if c == "step-2" else 0)
    report = _run(policy, provisioner, executor, console)

    assert [c.cmd for c in executor.calls] == ["step-1", "step-2"]
    assert _statuses(report.instances["linux"]) == {
        "one": StepStatus.SUCCEEDED,
        "two": StepStatus.FAILED,
        "three": StepStatus.NOT_RUN,
    }


def test_skipped_step_is_not_a_failure(provisioner, console):
    policy = define_policy(
        job(
            "mixed",
            sh("everywhere", "a"),
            sh("never here", "b", when=platform_is("macos")),
            sh("after", "c"),
        ),
        platforms=["linux", "macos"],
    )
    report = _run(policy, provisioner, RecordingExecutor(), console)

    linux = report.instances["linux"]
    assert linux.outcome is Outcome.SUCCEEDED
    assert linux.record("never here").status is StepStatus.SKIPPED
    assert linux.record("after").status is StepStatus.SUCCEEDED


def test_provisioning_failure_fails_only_that_instance(canonical_policy, tmp_path, console):
    provisioner = FakeProvisioner(tmp_path, unavailable=("windows",))
    executor = RecordingExecutor()
    report = _run(canonical_policy, provisioner, executor, console)

    assert report.outcomes["windows"] is Outcome.FAILED
    assert report.outcomes["linux"] is Outcome.SUCCEEDED
    assert report.outcomes["macos"] is Outcome.SUCCEEDED
    assert all(s is StepStatus.NOT_RUN for s in _statuses(report.instances["windows"]).values())
    assert "no windows runners" in report.instances["windows"].error
    assert executor.for_platform("windows") == []


def test_configuration_error_stops_before_any_instance(provisioner, console):
    policy = build_policy(elevation_platform="freebsd")
    executor = RecordingExecutor()

    with pytest.raises(ConfigurationError):
        _run(policy, provisioner, executor, console)
    assert executor.calls == []


def test_untriggered_event_runs_nothing(provisioner, console):
    policy = build_policy(on=["push"])
    executor = RecordingExecutor()
    report = _run(policy, provisioner, executor, console, TriggerEvent(kind=EventKind.PULL_REQUEST))

    assert report.triggered is False
    assert report.instances == {}
    assert executor.calls == []


def test_push_and_pull_request_behave_the_same(canonical_policy, tmp_path, console):
    push = _run(canonical_policy, FakeProvisioner(tmp_path / "p"), RecordingExecutor(), console)
    pr = _run(
        canonical_policy,
        FakeProvisioner(tmp_path / "r"),
        RecordingExecutor(),
        console,
        TriggerEvent(kind=EventKind.PULL_REQUEST),
    )
    assert push.outcomes == pr.outcomes
    for platform in push.instances:
        assert _statuses(push.instances[platform]) == _statuses(pr.instances[platform])


def test_no_fail_fast_lets_siblings_finish(provisioner, console):
    policy = define_policy(job("j", sh("work", "work")), platforms=["linux", "macos"])
    instances = expand(policy.platforms, policy.job, policy.env)
    instances.insert(1, expand(["windows"], job("j", sh("work", "fail")), policy.env)[0])

    outcomes = run_all(
        instances,
        provisioner=provisioner,
        executor=BlockingExecutor(hold=0.3),
        fail_fast=False,
        console=console,
    )
    assert outcomes == {
        "linux": Outcome.SUCCEEDED,
        "windows": Outcome.FAILED,
        "macos": Outcome.SUCCEEDED,
    }


def test_fail_fast_cancels_running_siblings(provisioner, console):
    base = job("j", sh("work", "work"))
    instances = expand(["linux", "macos"], base, {})
    instances.append(expand(["windows"], job("j", sh("work", "fail")), {})[0])

    outcomes = run_all(
        instances,
        provisioner=provisioner,
        executor=BlockingExecutor(hold=5.0),
        fail_fast=True,
        console=console,
    )
    assert set(outcomes.values()) == {Outcome.FAILED}
    for inst in instances[:2]:
        # cancelled mid-command, or stopped before the command started
        assert inst.record("work").status in (StepStatus.CANCELLED, StepStatus.NOT_RUN)
        assert inst.error == "cancelled"


def test_external_cancel_stops_every_instance(provisioner, console):
    policy = define_policy(job("j", sh("work", "work"), sh("later", "later")))
    instances = expand(policy.platforms, policy.job, policy.env)
    executor = BlockingExecutor(hold=5.0)
    cancel = threading.Event()

    def _cancel_when_started():
        executor.started.wait(5)
        cancel.set()

    threading.Thread(target=_cancel_when_started, daemon=True).start()
    outcomes = run_all(
        instances,
        provisioner=provisioner,
        executor=executor,
        cancel_event=cancel,
        console=console,
    )

    assert list(outcomes) == ["linux", "windows", "macos"]
    assert set(outcomes.values()) == {Outcome.FAILED}
    statuses = [inst.record("work").status for inst in instances]
    assert StepStatus.CANCELLED in statuses
    assert set(statuses) <= {StepStatus.CANCELLED, StepStatus.NOT_RUN}
    for inst in instances:
        assert inst.record("later").status is StepStatus.NOT_RUN


def test_run_instance_directly(canonical_policy, provisioner, console):
    inst = expand(["linux"], canonical_policy.job, canonical_policy.env)[0]
    workspace = provisioner.provision("linux")

    assert run_instance(inst, workspace, executor=RecordingExecutor(), console=console) is Outcome.SUCCEEDED
    assert inst.outcome is Outcome.SUCCEEDED


def test_missing_preserved_variable_fails_step(provisioner, console):
    policy = define_policy(
        job("j", elevated("root", "id", preserve=["TOOLCHAIN_HOME"])),
        platforms=["linux"],
    )

    class _Strict(RecordingExecutor):
        def run(self, cmd, *, cwd, env, elevation=None, on_output=None, cancel_event=None):
            preserved_env(env, elevation)
            return super().run(cmd, cwd=cwd, env=env, elevation=elevation)

    report = _run(policy, provisioner, _Strict(), console)
    rec = report.instances["linux"].record("root")
    assert rec.status is StepStatus.FAILED
    assert "elevation_env_missing" in rec.error


def test_report_enumerates_every_platform(canonical_policy, tmp_path, console):
    provisioner = FakeProvisioner(tmp_path, unavailable=("macos",))
    report = _run(canonical_policy, provisioner, RecordingExecutor(), console)
    data = report.to_dict()

    assert data["event"] == "push"
    assert data["failed"] is True
    assert data["outcomes"] == {"linux": "succeeded", "windows": "succeeded", "macos": "failed"}
    assert [s["name"] for s in data["instances"]["linux"]["steps"]] == [
        "Checkout",
        "Build",
        "Run tests",
        "Run tests (macos)",
    ]


def _host_workspace(tmp_path, platform="linux"):
    return Workspace(platform, tmp_path, {"PATH": os.environ.get("PATH", "")}, in_place=True)


@pytest.mark.skipif(os.name == "nt", reason="uses env(1) as the elevation command")
def test_overlay_reaches_elevated_command_after_env_reset(tmp_path, console, capsys):
    # env -i drops everything it is not handed, like sudo's env_reset
    template = job(
        "build",
        elevated(
            "Show env",
            'echo "color=[$CARGO_TERM_COLOR] path=[$PATH]"',
            command=("env", "-i"),
            when=platform_is("linux"),
        ),
    )
    inst = expand(["linux"], template, {"CARGO_TERM_COLOR": "always"})[0]
    ws = _host_workspace(tmp_path)

    assert run_instance(inst, ws, executor=ShellExecutor(), console=console) is Outcome.SUCCEEDED
    out = capsys.readouterr().out
    assert f"color=[always] path=[{ws.env['PATH']}]" in out


def test_missing_elevation_program_fails_that_step(tmp_path, console, capsys):
    template = job(
        "build",
        sh("Build", "echo built"),
        elevated("Run tests", "echo tested", when=platform_is("linux")),
        sh("Package", "echo packaged"),
    )
    inst = expand(["linux"], template, {})[0]
    executor = ShellExecutor(elevation_command=["no-such-sudo-binary"])

    outcome = run_instance(inst, _host_workspace(tmp_path), executor=executor, console=console)

    assert outcome is Outcome.FAILED
    assert _statuses(inst) == {
        "Build": StepStatus.SUCCEEDED,
        "Run tests": StepStatus.FAILED,
        "Package": StepStatus.NOT_RUN,
    }
    failed = inst.record("Run tests")
    assert failed.exit_code == 127
    assert "no-such-sudo-binary" in failed.error
    assert "Hint: Install no-such-sudo-binary or fix PATH." in capsys.readouterr().out
