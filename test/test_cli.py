"""Smoke tests for the command-line interface."""
import json

import pytest

from cli.helpers import collect_declaration_files, parse_cli_value, parse_type_args
from main import cli
from move.types import U64, StructType, TypeSyntaxError, VectorType

from test_utils import fun, module, sample_module, struct


def _write(path, data):
    path.write_text(json.dumps(data))
    return str(path)


@pytest.fixture
def broken_file(tmp_path):
    m = module(structs=[struct("Res", [("v", "u64")])], functions=[fun("f", params=[("r", "Res")])])
    return _write(tmp_path / "broken.json", m)


@pytest.fixture
def generic_file(tmp_path):
    identity = fun(
        "identity",
        type_params=[{"name": "T", "constraints": ["drop"]}],
        params=[("x", "T")],
        returns=["T"],
        body=[{"op": "return", "value": {"move": "x"}}],
    )
    return _write(tmp_path / "generic.json", module(functions=[identity]))


class TestCheckCommand:
    """Test `check`."""

    def test_clean(self, sample_file, capsys):
        assert cli(["check", str(sample_file)]) == 0
        assert "No issues found" in capsys.readouterr().out

    def test_errors(self, broken_file, capsys):
        assert cli(["check", broken_file]) == 1
        assert "UnconsumedResource" in capsys.readouterr().out

    def test_json(self, sample_file, capsys):
        assert cli(["check", str(sample_file), "-o", "json"]) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["errors"] == 0

    def test_directory_skips_private_files(self, tmp_path, capsys):
        _write(tmp_path / "sample.json", sample_module())
        (tmp_path / "_draft.json").write_text("{not json")
        assert cli(["check", str(tmp_path)]) == 0

    def test_missing_path(self, tmp_path):
        assert cli(["check", str(tmp_path / "nothing.json")]) == 1

    def test_invalid_file(self, tmp_path):
        (tmp_path / "bad.json").write_text("{not json")
        assert cli(["check", str(tmp_path / "bad.json")]) == 1

    def test_statement_missing_key(self, tmp_path):
        data = module(functions=[fun("f", body=[{"op": "assign", "target": "x"}])])
        assert cli(["check", _write(tmp_path / "partial.json", data)]) == 1

    def test_output_dir(self, sample_file, tmp_path):
        out_dir = tmp_path / "out"
        assert cli(["check", str(sample_file), "-O", str(out_dir)]) == 0
        assert (out_dir / "OUT-sample.txt").read_text().strip() == "No issues found"


class TestRunCommand:
    """Test `run`."""

    def test_values(self, sample_file, capsys):
        assert cli(["run", str(sample_file), "0x2::M::add", "--arg", "2", "--arg", "3"]) == 0
        assert capsys.readouterr().out.strip() == "[0] 5"

    def test_json(self, sample_file, capsys):
        argv = ["run", str(sample_file), "0x2::M::roundtrip", "--arg", "1", "--arg", "true", "--arg", "3", "-o", "json"]
        assert cli(argv) == 0
        assert json.loads(capsys.readouterr().out) == {"result": [1, True, 3]}

    def test_vector_argument(self, sample_file, capsys):
        assert cli(["run", str(sample_file), "0x2::M::sum", "--arg", "[4, 5]"]) == 0
        assert capsys.readouterr().out.strip() == "[0] 9"

    def test_no_return_values(self, sample_file, capsys):
        assert cli(["run", str(sample_file), "0x2::M::publish", "--arg", "0x42", "--arg", "1"]) == 0
        assert "no return values" in capsys.readouterr().out

    def test_type_argument(self, generic_file, capsys):
        assert cli(["run", generic_file, "0x2::M::identity", "--type-arg", "u64", "--arg", "7"]) == 0
        assert capsys.readouterr().out.strip() == "[0] 7"

    def test_bad_type_argument(self, generic_file):
        assert cli(["run", generic_file, "0x2::M::identity", "--type-arg", "vector<", "--arg", "7"]) == 1

    def test_abort(self, sample_file, capsys):
        assert cli(["run", str(sample_file), "0x2::M::value_of", "--arg", "0x42", "-o", "json"]) == 2
        payload = json.loads(capsys.readouterr().out)
        assert payload["error"] == "AbortError"
        assert payload["abort_code"] == 7

    def test_bad_argument(self, sample_file):
        assert cli(["run", str(sample_file), "0x2::M::add", "--arg", "abc", "--arg", "1"]) == 2

    def test_unknown_function(self, sample_file):
        assert cli(["run", str(sample_file), "0x2::M::nope"]) == 1

    def test_static_errors(self, broken_file, capsys):
        assert cli(["run", broken_file, "0x2::M::f"]) == 1
        assert "UnconsumedResource" in capsys.readouterr().out


class TestTestCommand:
    """Test `test`."""

    def test_pass(self, sample_file, capsys):
        assert cli(["test", str(sample_file)]) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert lines[-1].endswith("Test result: 2 passed; 0 failed; 0 error(s); 2 total")

    def test_failure(self, tmp_path, capsys):
        failing = fun("t", attributes={"test": {}}, body=[{"op": "abort", "code": 3}])
        path = _write(tmp_path / "failing.json", module(functions=[failing]))
        assert cli(["test", path, "-o", "json"]) == 1
        payload = json.loads(capsys.readouterr().out)
        assert payload["failed"] == 1

    def test_no_tests(self, tmp_path, capsys):
        path = _write(tmp_path / "plain.json", module(functions=[fun("f")]))
        assert cli(["test", path]) == 0
        assert "No test entries found" in capsys.readouterr().out

    def test_static_errors(self, broken_file):
        assert cli(["test", broken_file]) == 1


class TestHelpers:
    """Test CLI helper functions."""

    def test_collect_declaration_files(self, tmp_path):
        (tmp_path / "b.json").write_text("{}")
        (tmp_path / "_skip.json").write_text("{}")
        (tmp_path / "notes.txt").write_text("")
        nested = tmp_path / "nested"
        nested.mkdir()
        (nested / "a.json").write_text("{}")
        files = collect_declaration_files(str(tmp_path))
        assert files == sorted([str(tmp_path / "b.json"), str(nested / "a.json")])
        assert collect_declaration_files(str(tmp_path / "missing")) == []

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("7", 7),
            ("true", True),
            ("[1, 2]", [1, 2]),
            ("0x42", "0x42"),
            ("@0x1", "@0x1"),
        ],
    )
    def test_parse_cli_value(self, text, expected):
        assert parse_cli_value(text) == expected

    def test_parse_type_args(self):
        assert parse_type_args(["u64", "vector<u64>", "Coin"], "0x2::M") == [
            U64,
            VectorType(U64),
            StructType("0x2::M", "Coin"),
        ]
        with pytest.raises(TypeSyntaxError):
            parse_type_args(["vector<"], "0x2::M")
