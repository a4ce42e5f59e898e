import pytest

from kubeinstall.modules.operations import PreflightFailed
from kubeinstall.modules.preflight import PREFLIGHT_COMMAND, evaluate, split_sections

from conftest import PREFLIGHT_OK


def test_all_checks_pass():
    checks = evaluate(PREFLIGHT_OK)
    assert len(checks) == 7
    assert all(c.passed for c in checks), [c.message for c in checks if not c.passed]


def test_small_host_fails_cpu_memory_and_swap():
    output = PREFLIGHT_OK.replace("### cpu\n4", "### cpu\n1")
    output = output.replace("8152344 kB", "1015808 kB")
    output = output.replace("### swap\n", "### swap\n/swap.img file 2G 0B -2\n")
    failed = {c.name: c for c in evaluate(output) if not c.passed}
    assert set(failed) == {"CPU Cores", "Memory", "Swap"}
    assert failed["Swap"].recommendation


def test_old_kernel():
    output = PREFLIGHT_OK.replace("5.15.0-91-generic", "4.18.0-513.el8.x86_64")
    failed = [c.name for c in evaluate(output) if not c.passed]
    assert failed == ["Kernel Version"]


def test_missing_sections_fail():
    assert not any(c.passed for c in evaluate("") if c.name != "Swap")


def test_split_sections():
    assert split_sections("### a\n1\n2\n### b\n") == {"a": "1\n2", "b": ""}


def test_preflight_runs_as_one_command(services, make_node, fleet):
    node = make_node("node-a", "10.0.0.1")
    checks = services.operations.preflight(node)
    assert len(checks) == 7
    assert fleet.commands_for("10.0.0.1") == [PREFLIGHT_COMMAND]


def test_failed_preflight_raises(services, make_node, fleet):
    node = make_node("node-a", "10.0.0.1")
    fleet.on(PREFLIGHT_COMMAND, stdout=PREFLIGHT_OK.replace("### cpu\n4", "### cpu\n1"))
    with pytest.raises(PreflightFailed) as exc:
        services.operations.preflight(node)
    assert "CPU Cores" in str(exc.value)
