"""
Copyright 2023 Quarkslab

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import json
import logging

import pytest
from click.testing import CliRunner

import cfgdiff.__main__
from cfgdiff.__main__ import (
    EXIT_INPUT_ERROR,
    EXIT_INTERNAL_ERROR,
    EXIT_RIGHT_NAME_WITHOUT_NAME,
    check_range,
    main,
)

from mock_backend import make_program
from test_builder import BRANCH
from test_loader import ELF_X86_64
from test_matcher import BRANCH_SPLIT


@pytest.fixture
def runner():
    # The command configures the root logger
    level = logging.getLogger().level
    yield CliRunner()
    logging.getLogger().setLevel(level)


@pytest.fixture
def mock_programs(monkeypatch):
    """Load the programs of the command line from the in-memory backend"""

    programs = {
        "v1": {"main": BRANCH, "empty": []},
        "v2": {"main": BRANCH_SPLIT, "empty": []},
        "same": {"main": BRANCH},
    }

    def load(path, fmt):
        return make_program(programs[str(path)], fmt, name=str(path))

    monkeypatch.setattr(cfgdiff.__main__, "Program", load)


class TestCommandLine:
    """The cfgdiff command"""

    def test_architecture_mismatch(self, runner, tmp_path):
        path = tmp_path / "x86.o"
        path.write_bytes(ELF_X86_64)
        result = runner.invoke(main, ["-f", "arm64", str(path), str(path)])
        assert result.exit_code == EXIT_INPUT_ERROR
        assert "No difference found" not in result.output

    def test_unknown_format(self, runner):
        result = runner.invoke(main, ["-f", "sparc", "a.o", "b.o"])
        assert result.exit_code == 2
        assert "unknown format" in result.output

    def test_missing_format(self, runner):
        result = runner.invoke(main, ["a.o", "b.o"])
        assert result.exit_code == 2

    def test_right_name_without_name(self, runner):
        result = runner.invoke(main, ["-f", "x86-64", "--right-name", "foo", "a.o", "b.o"])
        assert result.exit_code == EXIT_RIGHT_NAME_WITHOUT_NAME

    def test_list_formats(self, runner):
        result = runner.invoke(main, ["--list-formats"])
        assert result.exit_code == 0
        assert "llvm-bitcode" in result.output
        assert "aarch64" in result.output

    def test_missing_file(self, runner, tmp_path):
        missing = str(tmp_path / "missing.bc")
        result = runner.invoke(main, ["-f", "llvm", missing, missing])
        assert result.exit_code == EXIT_INPUT_ERROR

    def test_identical(self, runner, mock_programs):
        result = runner.invoke(main, ["-f", "x86-64", "-q", "same", "same"])
        assert result.exit_code == 0
        assert "No difference found" in result.output

    def test_internal_error(self, runner, mock_programs):
        # The empty function cannot be compared, the others are still reported
        result = runner.invoke(main, ["-f", "x86-64", "-q", "v1", "v2"])
        assert result.exit_code == EXIT_INTERNAL_ERROR
        assert "internal error" in result.output
        assert "modified blocks" in result.output

    def test_name(self, runner, mock_programs):
        result = runner.invoke(main, ["-f", "x86-64", "-q", "-n", "main", "v1", "v2"])
        assert result.exit_code == 0
        assert "add eax, edi" in result.output

    def test_missing_name(self, runner, mock_programs):
        result = runner.invoke(main, ["-f", "x86-64", "-q", "-n", "nope", "v1", "v2"])
        assert result.exit_code == EXIT_INPUT_ERROR

    def test_json_output(self, runner, mock_programs, tmp_path):
        output = tmp_path / "diff.json"
        args = ["-f", "x86-64", "-q", "-n", "main", "--output-format", "json", "-o", str(output)]
        result = runner.invoke(main, args + ["v1", "v2"])
        assert result.exit_code == 0
        data = json.loads(output.read_text())
        assert data["has_diff"]
        statuses = [b["status"] for b in data["functions"][0]["blocks"]]
        assert statuses.count("modified") == 1

    def test_out_of_range(self, runner, mock_programs):
        args = ["-f", "x86-64", "-q", "--gap-cost", "-1", "--maxiter", "-3", "same", "same"]
        result = runner.invoke(main, args)
        assert result.exit_code == 0


class TestCheckRange:
    """Parameter validation"""

    def test_in_range(self):
        assert check_range("Ratio", 0.5, 1.0, 0.0, 1.0) == 0.5
        assert check_range("Ratio", 1.0, 0.5, 0.0, 1.0) == 1.0

    def test_out_of_range(self, caplog):
        caplog.set_level(logging.WARNING)
        assert check_range("Ratio", 1.5, 1.0, 0.0, 1.0) == 1.0
        assert "Ratio should be within" in caplog.text

    def test_strict(self):
        assert check_range("Gap cost", 0.0, 0.5, 0.0, strict=True) == 0.5
        assert check_range("Gap cost", 0.0, 0.5, 0.0) == 0.0
