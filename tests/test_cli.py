"""
Tests for droidhorn CLI.
"""

import json
import pytest

from droidhorn import __version__
from droidhorn.cli import EXIT_CLEAN, EXIT_ERROR, EXIT_LEAK, main


SOURCES_SINKS = """\
% test table
<com.example.Secrets: java.lang.String secret()> -> _SOURCE_
<com.example.Network: void send(java.lang.String)> -> _SINK_
"""


def program_json(sent):
    """onCreate sending either a secret or a constant"""
    if sent == "secret":
        produce = [
            {"op": "invoke-static", "ref": "Lcom/example/Secrets;->secret()Ljava/lang/String;"},
            {"op": "move-result-object", "regs": ["v0"]},
        ]
    else:
        produce = [{"op": "const-string", "regs": ["v0"], "ref": "hello"}]
    return {"classes": [
        {"type": "Lcom/example/Main;", "super": "Landroid/app/Activity;", "launcher": True,
         "fields": [],
         "methods": [
             {"name": "onCreate", "descriptor": "(Landroid/os/Bundle;)V",
              "registers": 3, "entry": True,
              "code": produce + [
                  {"op": "invoke-static", "regs": ["v0"],
                   "ref": "Lcom/example/Network;->send(Ljava/lang/String;)V"},
                  {"op": "return-void"},
              ]},
         ]},
        {"type": "Lcom/example/Box;", "fields": [{"name": "value:Ljava/lang/String;"}], "methods": []},
    ]}


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "ss.txt").write_text(SOURCES_SINKS)
    (tmp_path / "leaky.json").write_text(json.dumps(program_json("secret")))
    (tmp_path / "clean.json").write_text(json.dumps(program_json("constant")))
    return tmp_path


def analyze(workspace, name, *extra):
    return main(["analyze", str(workspace / name),
                 "--sources-sinks", str(workspace / "ss.txt"),
                 "--timeout", "60000", *extra])


class TestAnalyzeCommand:
    """Tests for the analyze command"""

    def test_leak_exit_status(self, workspace, capsys):
        """A leak exits with status 1 and is listed"""
        result = analyze(workspace, "leaky.json")
        captured = capsys.readouterr()
        assert result == EXIT_LEAK
        assert "[LEAK]" in captured.out
        assert "1 leak(s), 0 safe" in captured.out

    def test_clean_exit_status(self, workspace, capsys):
        """No leak exits with status 0"""
        result = analyze(workspace, "clean.json")
        captured = capsys.readouterr()
        assert result == EXIT_CLEAN
        assert "[SAFE]" in captured.out

    def test_json_format(self, workspace, capsys):
        """JSON output carries the leaks and a summary"""
        result = analyze(workspace, "leaky.json", "-f", "json")
        captured = capsys.readouterr()
        assert result == EXIT_LEAK
        data = json.loads(captured.out)
        assert data["program"] == "leaky.json"
        assert data["summary"]["leak"] == 1
        assert data["leaks"][0]["sink"] == "Lcom/example/Network;->send(Ljava/lang/String;)V"

    def test_output_file(self, workspace, capsys):
        """-o writes the report instead of printing it"""
        out = workspace / "report.json"
        result = analyze(workspace, "clean.json", "-f", "json", "-o", str(out))
        captured = capsys.readouterr()
        assert result == EXIT_CLEAN
        assert captured.out == ""
        assert json.loads(out.read_text())["summary"]["safe"] == 1

    def test_dump_smt2(self, workspace):
        """--dump-smt2 writes the encoding"""
        dump = workspace / "rules.smt2"
        analyze(workspace, "clean.json", "--dump-smt2", str(dump))
        text = dump.read_text()
        assert "declare-rel" in text
        assert "rule" in text

    def test_flags(self, workspace, capsys):
        """The encoding flags are accepted together"""
        result = analyze(workspace, "leaky.json", "-q", "-w", "-l", "-s", "-j", "2",
                         "-n", "64", "-r", "5", "--reachability")
        assert result == EXIT_LEAK

    def test_skip_unknown(self, workspace, capsys):
        """-g compiles unknown calls as no-ops"""
        result = analyze(workspace, "clean.json", "-g")
        assert result == EXIT_CLEAN

    def test_missing_file(self, tmp_path, capsys):
        """A missing program is an input error"""
        result = main(["analyze", str(tmp_path / "missing.json")])
        captured = capsys.readouterr()
        assert result == EXIT_ERROR
        assert "Error" in captured.err

    def test_malformed_json(self, tmp_path, capsys):
        """Malformed JSON is an input error"""
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        result = main(["analyze", str(bad)])
        assert result == EXIT_ERROR

    def test_bad_option(self, workspace, capsys):
        """Out-of-range options are input errors"""
        result = analyze(workspace, "clean.json", "-j", "0")
        captured = capsys.readouterr()
        assert result == EXIT_ERROR
        assert "workers" in captured.err


class TestRelationsCommand:
    """Tests for the relations command"""

    def test_no_sites(self, workspace, capsys):
        """A program without new-instance has an empty local heap"""
        result = main(["relations", str(workspace / "clean.json")])
        captured = capsys.readouterr()
        assert result == EXIT_CLEAN
        assert captured.out.startswith("0 allocation sites, local heap of 0 slots")

    def test_sites_listed(self, tmp_path, capsys):
        """Each site is printed with its slot range"""
        data = program_json("constant")
        data["classes"][0]["methods"][0]["code"].insert(
            0, {"op": "new-instance", "regs": ["v1"], "ref": "Lcom/example/Box;"})
        path = tmp_path / "box.json"
        path.write_text(json.dumps(data))
        result = main(["relations", str(path)])
        captured = capsys.readouterr()
        assert result == EXIT_CLEAN
        assert captured.out.startswith("1 allocation sites, local heap of 2 slots")
        assert "Lcom/example/Box;" in captured.out
        assert "slots 0..1" in captured.out

    def test_missing_file(self, tmp_path, capsys):
        """A missing program is an input error"""
        assert main(["relations", str(tmp_path / "missing.json")]) == EXIT_ERROR


class TestMain:
    """Tests for the entry point"""

    def test_no_command(self, capsys):
        """Without a command the help is printed"""
        result = main([])
        captured = capsys.readouterr()
        assert result == EXIT_CLEAN
        assert "droidhorn" in captured.out

    def test_version(self, capsys):
        """-V prints the version"""
        with pytest.raises(SystemExit) as exc_info:
            main(["-V"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out
