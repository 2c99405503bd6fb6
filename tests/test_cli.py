import pytest

from conftest import FakeBackend, outcome
from judgebox import __main__ as cli_mod
from judgebox.core.errors import ProvisionError
from judgebox.core.models import Phase


@pytest.fixture
def emitted(monkeypatch):
    out = []
    monkeypatch.setattr(cli_mod, "_emit", out.append)
    return out


@pytest.fixture
def conf(tmp_path, monkeypatch):
    monkeypatch.delenv("SBX_CONF", raising=False)
    path = tmp_path / "judgebox.yaml"
    path.write_text(f"backend: local\njobs_dir: {tmp_path / 'jobs'}\nlog_json: false\nlog_level: WARNING\n")
    return path


def use_backend(monkeypatch, backend):
    monkeypatch.setattr(cli_mod, "create_backend", lambda settings: backend)


def test_languages(conf, emitted):
    assert cli_mod.cli(["--conf", str(conf), "languages"]) == 0
    ids = [entry["id"] for entry in emitted[0]]
    assert "cpp" in ids and "python" in ids
    cpp = next(e for e in emitted[0] if e["id"] == "cpp")
    assert cpp["compiled"] is True


def test_run_accepted(conf, emitted, monkeypatch, tmp_path):
    backend = FakeBackend(run=[outcome(stdout="2\n")])
    use_backend(monkeypatch, backend)
    src = tmp_path / "solution.cpp"
    src.write_text("int main(){}")
    expected = tmp_path / "expected.txt"
    expected.write_text("2\n")

    code = cli_mod.cli(["--conf", str(conf), "run", str(src), "--expected", str(expected), "--cpu", "2"])
    assert code == 0
    assert emitted[0]["verdict"] == "Accepted"
    assert backend.execs[-1].limits.cpu_seconds == 2
    assert backend.closed


def test_run_compile_error_exit_code(conf, emitted, monkeypatch, tmp_path):
    use_backend(monkeypatch, FakeBackend(compile=[outcome(Phase.COMPILE, exit_code=1, stderr="error")]))
    src = tmp_path / "a.cpp"
    src.write_text("int main( {")
    assert cli_mod.cli(["--conf", str(conf), "run", str(src)]) == 1
    assert emitted[0]["verdict"] == "CompileError"


def test_run_internal_error_exit_code(conf, emitted, monkeypatch, tmp_path):
    use_backend(monkeypatch, FakeBackend(provision_error=ProvisionError("daemon down")))
    src = tmp_path / "a.py"
    src.write_text("print(1)")
    assert cli_mod.cli(["--conf", str(conf), "run", str(src)]) == 2
    assert emitted[0]["error_kind"] == "ProvisionError"


def test_run_unknown_language(conf, emitted, monkeypatch, tmp_path, capsys):
    use_backend(monkeypatch, FakeBackend())
    src = tmp_path / "a.cob"
    src.write_text("DISPLAY 'HI'.")
    assert cli_mod.cli(["--conf", str(conf), "run", str(src), "--lang", "cobol"]) == 2
    assert "unsupported language" in capsys.readouterr().err
    assert emitted == []


def test_run_cannot_infer_language(conf, tmp_path):
    src = tmp_path / "a.cob"
    src.write_text("x")
    with pytest.raises(SystemExit):
        cli_mod.cli(["--conf", str(conf), "run", str(src)])


def test_probe(conf, emitted, monkeypatch):
    use_backend(monkeypatch, FakeBackend())
    assert cli_mod.cli(["--conf", str(conf), "probe"]) == 0
    assert emitted[0]["backend"] == "fake"


def test_bad_config_exit_code(tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text("backend: nope\n")
    assert cli_mod.cli(["--conf", str(bad), "languages"]) == 2
    assert "invalid settings" in capsys.readouterr().err
