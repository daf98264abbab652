# tests/test_cli.py
"""
Tests for the ``ctxguard`` command line.
"""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from ctxguard import __version__
from ctxguard import __main__ as cli
from ctxguard.__main__ import EXIT_INFRA, EXIT_OK, EXIT_VIOLATION, main
from ctxguard.reporter import CHAIN_PREAMBLE
from tests.conftest import make_configuration
from tests.test_llvm_ir import IRQ_MODULE


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    logger = logging.getLogger("ctxguard")
    if cli._handler is not None:
        logger.removeHandler(cli._handler)
        cli._handler = None
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def irq_ll(tmp_path):
    path = tmp_path / "irq.ll"
    path.write_text(IRQ_MODULE)
    return path


CHAIN = CHAIN_PREAMBLE + " x86_exception_handler handle_page_fault mutex_acquire"


class TestExitCodes:

    def test_default_preset_finds_violation(self, irq_ll, capsys):
        assert main(["--demangle", "none", str(irq_ll)]) == EXIT_VIOLATION
        captured = capsys.readouterr()
        assert CHAIN in captured.err
        assert CHAIN_PREAMBLE not in captured.out

    def test_clean_policy(self, irq_ll, capsys):
        argv = ["--demangle", "none", "--entry", "x86_exception_handler",
                "--blacklist", "spin_forever", str(irq_ll)]
        assert main(argv) == EXIT_OK
        assert capsys.readouterr().err == ""

    def test_sink_flag_prunes(self, irq_ll):
        argv = ["--demangle", "none", "--preset", "interrupt-context",
                "--sink", "handle_page_fault", str(irq_ll)]
        assert main(argv) == EXIT_OK

    def test_overlapping_flags(self, irq_ll, caplog):
        argv = ["--preset", "interrupt-context", "--sink", "mutex_acquire", str(irq_ll)]
        assert main(argv) == EXIT_INFRA
        assert "CTXG-1001" in caplog.text

    def test_unknown_input_kind(self, tmp_path, caplog):
        path = tmp_path / "irq.o"
        path.write_bytes(b"\x7fELF")
        assert main([str(path)]) == EXIT_INFRA
        assert "CTXG-2003" in caplog.text

    def test_ir_syntax_error(self, tmp_path, caplog):
        path = tmp_path / "bad.ll"
        path.write_text("define void nope() {\n}\n")
        assert main([str(path)]) == EXIT_INFRA
        assert f"{path}:1: error:" in caplog.text

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as info:
            main(["--version"])
        assert info.value.code == 0
        assert __version__ in capsys.readouterr().out


class TestPolicySources:

    def test_policy_file(self, irq_ll, tmp_path):
        policy = tmp_path / "policy.json"
        policy.write_text(json.dumps({
            "entry_points": ["handle_page_fault"],
            "blacklist": ["panic"],
        }))
        assert main(["--demangle", "none", "--policy", str(policy), str(irq_ll)]) == EXIT_OK

    def test_entry_by_flag(self, irq_ll, capsys):
        argv = ["--demangle", "none", "--entry", "handle_page_fault",
                "--blacklist", "mutex_acquire", str(irq_ll)]
        assert main(argv) == EXIT_VIOLATION
        assert CHAIN_PREAMBLE + " handle_page_fault mutex_acquire" in capsys.readouterr().err


class TestOutput:

    def test_output_file(self, irq_ll, tmp_path, capsys):
        out = tmp_path / "chains.txt"
        assert main(["--demangle", "none", "-o", str(out), str(irq_ll)]) == EXIT_VIOLATION
        assert out.read_text() == CHAIN + "\n"
        assert CHAIN_PREAMBLE not in capsys.readouterr().err

    def test_json_summary(self, irq_ll, capsys):
        assert main(["--demangle", "none", "--json", str(irq_ll)]) == EXIT_VIOLATION
        data = json.loads(capsys.readouterr().out)
        assert data["passed"] is False
        assert data["policy"]["entry_points"] == ["x86_exception_handler"]
        (program,) = data["programs"]
        assert program["program"] == str(irq_ll)
        assert program["entries"][0]["chains"] == [
            ["x86_exception_handler", "handle_page_fault", "mutex_acquire"],
        ]

    def test_shared_mode_accepted(self, irq_ll, capsys):
        assert main(["--demangle", "none", "--mode", "shared", "--json", str(irq_ll)]) == EXIT_VIOLATION
        assert json.loads(capsys.readouterr().out)["programs"][0]["mode"] == "shared"


class TestInputs:

    def test_cppcheck_dump(self, tmp_path, capsys):
        dump = tmp_path / "irq.c.dump"
        dump.write_text("<dumps/>")
        config = make_configuration(
            "void x86_exception_handler(void) { do_irq(); }\n"
            "void do_irq(void) { mutex_acquire(0); }\n"
        )
        module = MagicMock()
        module.parsedump.return_value = MagicMock(configurations=[config])
        with patch("ctxguard.dump_loader._import_cppcheckdata", return_value=module):
            assert main([str(dump)]) == EXIT_VIOLATION
        assert (
            CHAIN_PREAMBLE + " x86_exception_handler do_irq mutex_acquire"
            in capsys.readouterr().err
        )

    def test_every_input_checked(self, irq_ll, tmp_path, capsys):
        clean = tmp_path / "clean.ll"
        clean.write_text("define void @x86_exception_handler() {\n  ret void\n}\n")
        argv = ["--demangle", "none", "--json", str(clean), str(irq_ll)]
        assert main(argv) == EXIT_VIOLATION
        data = json.loads(capsys.readouterr().out)
        assert [p["passed"] for p in data["programs"]] == [True, False]

    def test_cxxfilt_demangling(self, tmp_path, capsys):
        path = tmp_path / "lock.ll"
        path.write_text(
            "define void @x86_exception_handler() {\n"
            "  call void @_ZN5Mutex7AcquireEv()\n"
            "  ret void\n"
            "}\n"
        )
        argv = ["--entry", "x86_exception_handler", "--blacklist", "Mutex::Acquire()", str(path)]
        with patch("ctxguard.symbols.shutil.which", return_value="/usr/bin/c++filt"), \
                patch("ctxguard.symbols.subprocess.run") as run:
            run.return_value = MagicMock(stdout="Mutex::Acquire()\n")
            assert main(argv) == EXIT_VIOLATION
        assert "x86_exception_handler Mutex::Acquire()" in capsys.readouterr().err
