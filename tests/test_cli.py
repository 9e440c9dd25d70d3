import errno
import logging
from pathlib import Path

import pytest

import port_collision_reproducer as pcr
from port_collision_reproducer import PortCollisionReproducer, ReproducerConfig


@pytest.fixture
def fake_stack(monkeypatch, make_network):
    """Route the CLI's reproducer through a FakeNetwork"""
    def install(**kwargs):
        network = make_network(**kwargs)
        monkeypatch.setattr(
            pcr, "PortCollisionReproducer",
            lambda config: PortCollisionReproducer(config, socket_factory=network.socket),
        )
        return network
    return install


def run_cli(*argv):
    with pytest.raises(SystemExit) as excinfo:
        pcr.main(list(argv))
    return excinfo.value.code


@pytest.mark.parametrize("argv", [
    ["70000"],
    ["0"],
    ["http"],
    [],
    ["51000", "--disposal", "leak"],
    ["51000", "--budget", "0"],
    ["51000", "--timeout", "-1"],
])
def test_invalid_arguments_exit_2(argv):
    assert run_cli(*argv) == pcr.EXIT_INVALID_ARGUMENTS


def test_collision_exits_0(fake_stack, caplog):
    caplog.set_level(logging.INFO, logger=pcr.__name__)
    fake_stack()

    assert run_cli("51000", "--budget", "20000") == pcr.EXIT_OK
    assert "ConnectedToSelf" in caplog.text


def test_refused_exits_0(fake_stack, caplog):
    caplog.set_level(logging.INFO, logger=pcr.__name__)
    fake_stack(self_connect=False)

    assert run_cli("51000", "--budget", "20000") == pcr.EXIT_OK
    assert "ConnectionRefused" in caplog.text


def test_budget_exhausted_exits_1(fake_stack):
    fake_stack()

    assert run_cli("8080", "--budget", "1000") == pcr.EXIT_BUDGET_EXHAUSTED


def test_os_error_exits_3(fake_stack, caplog):
    fake_stack(fail_after=5)

    assert run_cli("51000", "--budget", "20000") == pcr.EXIT_OS_ERROR
    assert "Too many open files" in caplog.text


def test_hold_reports_hostage_port(fake_stack, monkeypatch, caplog):
    fake_stack()
    checked = []

    def service_can_bind(host, port):
        checked.append((host, port))
        return False

    monkeypatch.setattr(pcr, "service_can_bind", service_can_bind)

    assert run_cli("49200", "--disposal", "hold", "--budget", "100") == pcr.EXIT_OK
    assert checked == [("127.0.0.1", 49200)]
    assert "held hostage" in caplog.text


def test_config_file_supplies_defaults(fake_stack, tmp_path):
    fake_stack()
    path = tmp_path / "reproducer.yaml"
    path.write_text("budget: 10\nprogress_every: 5\n")

    assert run_cli("51000", "-c", str(path)) == pcr.EXIT_BUDGET_EXHAUSTED
    assert run_cli("51000", "-c", str(path), "--budget", "20000") == pcr.EXIT_OK


def test_config_file_with_unknown_key_exits_2(tmp_path):
    path = tmp_path / "reproducer.yaml"
    path.write_text("retry_interval: 5\n")

    assert run_cli("51000", "-c", str(path)) == pcr.EXIT_INVALID_ARGUMENTS


def test_from_yaml_overrides_win(tmp_path):
    path = tmp_path / "reproducer.yaml"
    path.write_text("target_port: 50000\nbudget: 10\ndisposal: hold\n")

    config = ReproducerConfig.from_yaml(str(path), target_port=51000, budget=None)

    assert config.target_port == 51000
    assert config.budget == 10
    assert config.disposal == "hold"


def test_from_yaml_missing_file_uses_defaults(tmp_path, caplog):
    config = ReproducerConfig.from_yaml(str(tmp_path / "missing.yaml"), target_port=51000)

    assert config.budget == pcr.default_budget()
    assert config.disposal == "close"
    assert "not found" in caplog.text


def test_from_yaml_requires_target_port(tmp_path):
    path = tmp_path / "reproducer.yaml"
    path.write_text("budget: 10\n")

    with pytest.raises(ValueError, match="target_port"):
        ReproducerConfig.from_yaml(str(path))


@pytest.mark.parametrize("kwargs", [
    {"target_port": 65536},
    {"target_port": 51000, "budget": 0},
    {"target_port": 51000, "disposal": "leak"},
    {"target_port": 51000, "time_budget": 0},
    {"target_port": 51000, "lead": -1},
])
def test_config_validation(kwargs):
    with pytest.raises(ValueError):
        ReproducerConfig(**kwargs)


def test_error_codes_are_named_in_summary(caplog):
    caplog.set_level(logging.INFO, logger=pcr.__name__)
    result = pcr.ReproducerResult(
        outcome=pcr.CollisionOutcome.CONNECTION_REFUSED,
        target_port=51000,
        last_probe_port=50999,
        iterations=3,
        connect_attempts=1,
        error_code=errno.ECONNREFUSED,
    )

    pcr.log_summary(result)

    assert "ECONNREFUSED" in caplog.text


def test_hold_budget_beyond_open_file_limit_exits_3(fake_stack, monkeypatch, caplog):
    network = fake_stack()
    monkeypatch.setattr(pcr, "raise_open_file_limit", lambda needed: 1024)

    assert run_cli("65535", "--disposal", "hold", "--budget", "5000") == pcr.EXIT_OS_ERROR
    assert "at most 960 sockets" in caplog.text
    assert network.created == []


def test_shipped_preset_keeps_range_derived_budget():
    path = Path(pcr.__file__).with_name("reproducer_config.yaml")

    config = ReproducerConfig.from_yaml(str(path), target_port=51000)

    assert config.budget == pcr.default_budget()
    assert path.name in pcr.build_parser().epilog
