"""Tests for the ca-trust command line."""

import os

import pytest

import ca_trust
import cert_lib
from trust_errors import EXIT_INVALID_ARGS, EXIT_INVALID_STATE, EXIT_OK, EXIT_PERMISSION


@pytest.fixture
def run(config, tmp_path):
    environ = {
        "CA_TRUST_STORE_PATH": str(config.store_path),
        "CA_TRUST_LOCAL_SOURCE_PATH": str(config.local_source_path),
        "CA_TRUST_VENDOR_SOURCE_PATH": str(config.vendor_source_path),
        "CA_TRUST_KEYTOOL": str(tmp_path / "no-keytool"),
    }

    def _run(*argv, env=None):
        return ca_trust.main(list(argv), environ=environ if env is None else env)

    return _run


@pytest.fixture
def vendor_abc(certs, config):
    return {
        name: certs.write(certs.root(f"Root {name}"), config.vendor_trusted / f"{name}.pem")
        for name in ("A", "B", "C")
    }


def test_generate_and_list(run, vendor_abc, capsys):
    assert run("generate") == EXIT_OK
    assert "Deployed 3 anchors" in capsys.readouterr().out

    assert run("list") == EXIT_OK
    out = capsys.readouterr().out
    assert out.count("id: ") == 3
    assert out.index("File: A.pem") < out.index("File: B.pem") < out.index("File: C.pem")
    assert "Authority: O=Test PKI, CN=Root A" in out


def test_generate_reports_missing_keytool_but_succeeds(run, vendor_abc, capsys):
    assert run("generate") == EXIT_OK
    assert "Warning: compat bundle ca-roots.keystore" in capsys.readouterr().err


def test_remove_scenario(run, config, vendor_abc, capsys):
    run("generate")
    fp_a = cert_lib.fingerprint(vendor_abc["A"])

    assert run("remove", str(vendor_abc["A"])) == EXIT_OK
    assert [cert_lib.fingerprint(p) for p in config.local_distrusted.iterdir()] == [fp_a]
    capsys.readouterr()

    run("list")
    out = capsys.readouterr().out
    assert fp_a not in out
    assert "File: B.pem" in out and "File: C.pem" in out


def test_remove_unknown_exits_zero(run, capsys):
    assert run("remove", "does-not-exist") == EXIT_OK
    captured = capsys.readouterr()
    assert "Nothing to do." in captured.out
    assert "does-not-exist" in captured.err


def test_remove_with_distrusted_file(run, config, vendor_abc):
    config.local_source_path.mkdir(parents=True)
    config.local_distrusted.write_text("oops")

    assert run("remove", str(vendor_abc["A"])) == EXIT_INVALID_STATE


def test_add_not_self_signed(run, config, certs, tmp_path, capsys):
    certs.root("Issuer")
    sub = certs.write(certs.issued("X", "Issuer"), tmp_path / "X.pem")

    assert run("add", str(sub)) == EXIT_INVALID_ARGS
    assert "X.pem" in capsys.readouterr().err
    assert not config.local_trusted.exists()

    assert run("add", str(sub), "--force") == EXIT_OK
    capsys.readouterr()
    run("list")
    assert "File: X.pem" in capsys.readouterr().out


def test_list_without_store(run, capsys):
    assert run("list") == EXIT_INVALID_STATE
    assert "generate" in capsys.readouterr().err


def test_check(run, config):
    assert run("check") == EXIT_OK

    config.local_source_path.mkdir(parents=True)
    config.local_distrusted.write_text("oops")
    assert run("check") == EXIT_INVALID_STATE


def test_invalid_arguments(run):
    with pytest.raises(SystemExit) as excinfo:
        run("add")
    assert excinfo.value.code == EXIT_INVALID_ARGS


@pytest.mark.skipif(os.geteuid() == 0, reason="root may write the default store")
def test_default_store_requires_root(run, capsys):
    assert run("generate", env={}) == EXIT_PERMISSION
    assert "root" in capsys.readouterr().err
