import sys

import pytest

import video_merge_cli
from conftest import FakeInspector, FakeInvoker
from video_merge.orchestrator import MergeOrchestrator


class TestCli:

    @pytest.fixture(autouse=True)
    def fake_tools(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VIDEO_MERGE_TMP_DIR", str(tmp_path / "scratch"))
        self.inspector = FakeInspector(audio={"intro": True, "main": False})
        self.invoker = FakeInvoker()

        def build(config, logger, show_ffmpeg):
            return MergeOrchestrator(config, inspector=self.inspector, invoker=self.invoker)

        monkeypatch.setattr(video_merge_cli, "build_orchestrator", build)

    def run_cli(self, monkeypatch, *args):
        monkeypatch.setattr(sys, "argv", ["video-merge", *args])
        return video_merge_cli.main()

    def test_plan_only(self, monkeypatch, capsys, source_files):
        intro, main = source_files
        assert self.run_cli(monkeypatch, "-i", str(intro), "-m", str(main), "--plan-only") == 0

        out = capsys.readouterr().out
        assert "only intro has audio" in out
        assert "[0:a]aresample=48000,asetpts=PTS-STARTPTS[a_intro]" in out
        assert "-map [v] -map [a_intro]" in out
        assert self.invoker.calls == []

    def test_merge(self, monkeypatch, capsys, tmp_path, source_files):
        intro, main = source_files
        output = tmp_path / "result" / "merged.mp4"

        assert self.run_cli(monkeypatch, "-i", str(intro), "-m", str(main), "-o", str(output)) == 0

        assert output.read_bytes() == b"merged-video"
        assert intro.exists() and main.exists()
        assert "Video saved" in capsys.readouterr().out

    def test_merge_failure_returns_error_code(self, monkeypatch, capsys, tmp_path, source_files):
        intro, main = source_files
        self.invoker = FakeInvoker(fail_with="FFmpeg failed: Conversion failed!")
        output = tmp_path / "merged.mp4"

        assert self.run_cli(monkeypatch, "-i", str(intro), "-m", str(main), "-o", str(output)) == 1

        assert not output.exists()
        assert "Conversion failed!" in capsys.readouterr().out

    def test_missing_input_file(self, monkeypatch, capsys, tmp_path, source_files):
        intro, _ = source_files
        code = self.run_cli(monkeypatch, "-i", str(intro), "-m", str(tmp_path / "absent.mp4"),
                            "-o", str(tmp_path / "out.mp4"))
        assert code == 1
        assert "Error" in capsys.readouterr().out

    def test_output_required_without_plan_only(self, monkeypatch, source_files):
        intro, main = source_files
        with pytest.raises(SystemExit):
            self.run_cli(monkeypatch, "-i", str(intro), "-m", str(main))
