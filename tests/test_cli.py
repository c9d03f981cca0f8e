# tests/test_cli.py
"""
Tests for the ``cwecheck`` command line driver.
"""

import json
import logging
from unittest.mock import patch

import pytest

from cwecheck.__main__ import EXIT_CLEAN, EXIT_FINDINGS, EXIT_INPUT, main
from cwecheck.errors import InternalInvariantError


def program_document(terms):
    return {
        "binary": {"name": "a.out", "sha256": "00" * 32},
        "architecture": {"isa": "x86_64", "bits": 64},
        "sections": [{"name": ".text", "address": "0x401000", "size": 4096,
                      "offset": 4096, "executable": True}],
        "symbols": [{"address": "0x401000", "name": "main"}],
        "relocations": [],
        "functions": [{
            "address": "0x401000",
            "blocks": [{"address": "0x401000", "terms": terms}],
        }],
    }


@pytest.fixture
def dangerous_program(tmp_path):
    path = tmp_path / "dangerous.json"
    path.write_text(json.dumps(program_document(["call @gets", "return"])))
    return str(path)


@pytest.fixture
def clean_program(tmp_path):
    path = tmp_path / "clean.json"
    path.write_text(json.dumps(program_document(["RAX := 0x0", "return"])))
    return str(path)


class TestMain:

    def test_list_units(self, capsys):
        assert main(["--list-units"]) == EXIT_CLEAN
        out = capsys.readouterr().out
        assert out.splitlines()[0].startswith("AddrTrans")
        assert "CWE476" in out and "SerdeJson" in out

    def test_findings_exit_code(self, dangerous_program, capsys):
        assert main([dangerous_program]) == EXIT_FINDINGS
        doc = json.loads(capsys.readouterr().out)
        assert [f["cwe_id"] for f in doc["findings"]] == ["CWE-676"]
        assert doc["findings"][0]["location"]["function_name"] == "main"

    def test_clean_exit_code(self, clean_program, capsys):
        assert main([clean_program]) == EXIT_CLEAN
        assert json.loads(capsys.readouterr().out)["findings"] == []

    def test_repeated_runs_keep_one_log_handler(self, capsys):
        main(["--list-units", "-v"])
        main(["--list-units"])
        logger = logging.getLogger("cwecheck")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING

    def test_text_output_to_file(self, dangerous_program, tmp_path):
        out = tmp_path / "report.txt"
        assert main([dangerous_program, "--format", "text", "-o", str(out)]) == EXIT_FINDINGS
        assert out.read_text().startswith("[CWE-676] main@0x401000: ")

    def test_unit_selection(self, dangerous_program, capsys):
        assert main([dangerous_program, "--units", "CWE476"]) == EXIT_CLEAN
        doc = json.loads(capsys.readouterr().out)
        assert doc["units"][-2:] == ["CWE476", "SerdeJson"]

    def test_config_file(self, dangerous_program, tmp_path, capsys):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"dangerous_functions": ["strcpy"]}))
        assert main([dangerous_program, "--config", str(config)]) == EXIT_CLEAN

    @pytest.mark.parametrize("argv", [
        [],
        ["missing.json"],
        ["{program}", "--units", "CWE999"],
        ["{program}", "--jobs", "0"],
        ["{program}", "--config", "missing.json"],
        ["{program}", "--elf", "{program}"],
    ])
    def test_input_errors(self, argv, dangerous_program, capsys):
        argv = [a.format(program=dangerous_program) for a in argv]
        assert main(argv) == EXIT_INPUT
        assert "cwecheck: error:" in capsys.readouterr().err

    def test_internal_error_propagates(self, dangerous_program):
        with patch("cwecheck.__main__.Pipeline.run",
                   side_effect=InternalInvariantError("no fixpoint")):
            with pytest.raises(InternalInvariantError):
                main([dangerous_program])
