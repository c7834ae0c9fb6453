# tests/test_cli.py
"""
Tests for the ``catflow`` command line: exit codes, output and options.
"""

import json

import pytest

from catflow import __version__
from catflow.main import EXIT_ERROR, EXIT_INFRA, EXIT_OK, main
from tests.conftest import ESCAPING_CELL_IR, FOLD_ADD_IR, PHI_SAME_CONSTANT_IR


class TestOptimize:

    def test_prints_optimised_module(self, ir_file, capsys):
        path = ir_file(FOLD_ADD_IR)
        assert main(["optimize", str(path)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "call void @write(ptr %a, i64 7)" in out
        assert "@read" not in out

    def test_output_file(self, ir_file, tmp_path, capsys):
        path = ir_file(FOLD_ADD_IR)
        dest = tmp_path / "out" / "prog.opt.ll"
        assert main(["optimize", str(path), "-o", str(dest)]) == EXIT_OK
        assert capsys.readouterr().out == ""
        assert "call void @print(i64 7)" in dest.read_text()

    def test_dump(self, ir_file, capsys):
        path = ir_file(FOLD_ADD_IR)
        assert main(["optimize", str(path), "--dump", "rda", "--dump", "types"]) == EXIT_OK
        out = capsys.readouterr().out
        assert out.index("Reaching definitions of @f") < out.index("Classification of @f")
        assert "call void @add(ptr %a, ptr %a, ptr %b)" in out

    def test_conservative(self, ir_file, capsys):
        path = ir_file(ESCAPING_CELL_IR)
        assert main(["optimize", str(path), "--conservative"]) == EXIT_OK
        assert "@read(ptr %b)" in capsys.readouterr().out

    def test_cat_names(self, ir_file, capsys):
        text = FOLD_ADD_IR
        for old, new in (("@create", "@CAT_new"), ("@add", "@CAT_add"),
                         ("@read", "@CAT_get")):
            text = text.replace(old, new)
        path = ir_file(text)
        assert main(["optimize", str(path), "--cat-names"]) == EXIT_OK
        assert "call void @CAT_set(ptr %a, i64 7)" in capsys.readouterr().out

    def test_config_file(self, ir_file, tmp_path, capsys):
        config = tmp_path / "catflow.json"
        config.write_text(json.dumps({"readonly_callees": ["external"]}))
        path = ir_file(ESCAPING_CELL_IR)
        assert main(["optimize", str(path), "--config", str(config)]) == EXIT_OK
        assert "call void @print(i64 1)" in capsys.readouterr().out

    def test_bad_config(self, ir_file, tmp_path):
        config = tmp_path / "catflow.json"
        config.write_text(json.dumps({"bogus": 1}))
        path = ir_file(FOLD_ADD_IR)
        assert main(["optimize", str(path), "--config", str(config)]) == EXIT_INFRA

    def test_max_iterations(self, ir_file):
        path = ir_file(FOLD_ADD_IR)
        assert main(["optimize", str(path), "--max-iterations", "0"]) == EXIT_INFRA
        assert main(["optimize", str(path), "--max-iterations", "5"]) == EXIT_OK


class TestCheck:

    def test_ok(self, ir_file, capsys):
        path = ir_file(ESCAPING_CELL_IR)
        assert main(["check", str(path)]) == EXIT_OK
        assert capsys.readouterr().out.strip() == f"{path}: ok (1 function(s), 0 global(s))"

    def test_syntax_error(self, ir_file, caplog):
        path = ir_file("define void @f( {\n")
        assert main(["check", str(path)]) == EXIT_INFRA

    def test_validation_error(self, ir_file, caplog):
        path = ir_file("""
            define void @f(ptr %a) {
            entry:
              call void @write(ptr %a)
              ret void
            }
        """)
        assert main(["check", str(path)]) == EXIT_ERROR
        assert "expects 2 argument(s)" in caplog.text

    def test_missing_file(self, tmp_path):
        assert main(["check", str(tmp_path / "nope.ll")]) == EXIT_INFRA

    def test_undecodable_file(self, tmp_path, caplog):
        path = tmp_path / "bad.ll"
        path.write_bytes(b"\xff")
        assert main(["check", str(path)]) == EXIT_INFRA
        assert "cannot read" in caplog.text

    def test_undecodable_config(self, ir_file, tmp_path):
        config = tmp_path / "catflow.json"
        config.write_bytes(b"\xff\xfe")
        path = ir_file(FOLD_ADD_IR)
        assert main(["optimize", str(path), "--config", str(config)]) == EXIT_INFRA


class TestCfg:

    def test_one_function(self, ir_file, capsys):
        path = ir_file(PHI_SAME_CONSTANT_IR)
        assert main(["cfg", str(path), "--function", "f"]) == EXIT_OK
        out = capsys.readouterr().out
        assert out.startswith("digraph CFG {")
        assert 'label="@f";' in out

    def test_unknown_function(self, ir_file):
        path = ir_file(PHI_SAME_CONSTANT_IR)
        assert main(["cfg", str(path), "--function", "nope"]) == EXIT_ERROR


class TestParser:

    def test_no_command(self, capsys):
        assert main([]) == EXIT_INFRA
        assert "usage" in capsys.readouterr().err

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as info:
            main(["--version"])
        assert info.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_unknown_dump_kind(self, ir_file):
        path = ir_file(FOLD_ADD_IR)
        with pytest.raises(SystemExit):
            main(["optimize", str(path), "--dump", "bogus"])
