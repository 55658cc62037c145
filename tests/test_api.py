import asyncio

import pytest
from fastapi.testclient import TestClient

from api_server import CleanupFileResponse, create_app
from conftest import FakeInspector, FakeInvoker, write_inputs
from video_merge.errors import DeliveryError
from video_merge.orchestrator import MergeOrchestrator, MergeState


def upload(name, content=b"fake-video-bytes"):
    return (name, content, "video/mp4")


class TestMergeVideosEndpoint:

    @pytest.fixture(autouse=True)
    def init_client(self, config):
        self.config = config
        self.app = create_app(config)
        self.inspector = FakeInspector()
        self.invoker = FakeInvoker()
        self.use_orchestrator(self.inspector, self.invoker)
        self.client = TestClient(self.app)

    def use_orchestrator(self, inspector, invoker):
        self.inspector = inspector
        self.invoker = invoker
        self.app.state.orchestrator = MergeOrchestrator(self.config, inspector=inspector, invoker=invoker)

    def scratch_contents(self):
        return list(self.config.temp_dir.iterdir())

    def test_health(self):
        response = self.client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_root_lists_endpoints(self):
        response = self.client.get("/")
        assert response.status_code == 200
        assert response.json()["endpoints"]["merge_videos"] == "/api/merge-videos"

    def test_merge_returns_video_and_cleans_up(self):
        response = self.client.post(
            "/api/merge-videos",
            files={"intro": upload("intro.mp4"), "main": upload("lesson.mov")}
        )

        assert response.status_code == 200
        assert response.content == b"merged-video"
        assert response.headers["content-type"].startswith("video/mp4")
        assert "merged.mp4" in response.headers["content-disposition"]

        intro_path, main_path, plan, _ = self.invoker.calls[0]
        assert intro_path.name.endswith("_intro.mp4")
        assert main_path.name.endswith("_main.mov")
        assert plan.output_labels() == ["v", "a"]
        assert self.scratch_contents() == []

    def test_intro_audio_only(self):
        self.use_orchestrator(FakeInspector(audio={"intro": True, "main": False}), FakeInvoker())
        response = self.client.post(
            "/api/merge-videos",
            files={"intro": upload("intro.mp4"), "main": upload("main.mp4")}
        )
        assert response.status_code == 200
        plan = self.invoker.calls[0][2]
        assert plan.final_audio_label == "a_intro"
        assert len(plan.audio_stages) == 1

    def test_missing_main_is_rejected_before_processing(self):
        response = self.client.post("/api/merge-videos", files={"intro": upload("intro.mp4")})

        assert response.status_code == 400
        assert "Missing files" in response.json()["error"]
        assert self.inspector.calls == []
        assert self.invoker.calls == []
        assert self.scratch_contents() == []

    def test_no_files(self):
        response = self.client.post("/api/merge-videos")
        assert response.status_code == 400
        assert "error" in response.json()

    def test_empty_upload(self):
        response = self.client.post(
            "/api/merge-videos",
            files={"intro": upload("intro.mp4", b""), "main": upload("main.mp4")}
        )
        assert response.status_code == 400
        assert "empty" in response.json()["error"]
        assert self.scratch_contents() == []

    def test_upload_too_large(self):
        self.config.max_upload_size = 4
        response = self.client.post(
            "/api/merge-videos",
            files={"intro": upload("intro.mp4"), "main": upload("main.mp4")}
        )
        assert response.status_code == 400
        assert "too large" in response.json()["error"]
        assert self.scratch_contents() == []

    def test_probe_failure(self):
        self.use_orchestrator(FakeInspector(fail_on="intro"), FakeInvoker())
        response = self.client.post(
            "/api/merge-videos",
            files={"intro": upload("intro.mp4"), "main": upload("main.mp4")}
        )
        assert response.status_code == 500
        assert "Could not read media file" in response.json()["error"]
        assert self.invoker.calls == []
        assert self.scratch_contents() == []

    def test_transcode_failure(self):
        self.use_orchestrator(FakeInspector(), FakeInvoker(fail_with="FFmpeg failed: Conversion failed!"))
        response = self.client.post(
            "/api/merge-videos",
            files={"intro": upload("intro.mp4"), "main": upload("main.mp4")}
        )
        assert response.status_code == 500
        assert response.json() == {"error": "FFmpeg failed: Conversion failed!"}
        assert self.scratch_contents() == []

    def test_unsafe_filename_does_not_escape_scratch_dir(self):
        response = self.client.post(
            "/api/merge-videos",
            files={"intro": upload("../../etc/intro"), "main": upload("main.mp4")}
        )
        assert response.status_code == 200
        intro_path = self.invoker.calls[0][0]
        assert intro_path.parent == self.config.temp_dir
        assert intro_path.suffix == ".mp4"

    def test_repeated_field_is_rejected(self):
        response = self.client.post(
            "/api/merge-videos",
            files=[
                ("intro", upload("intro.mp4")),
                ("intro", upload("intro-2.mp4")),
                ("main", upload("main.mp4")),
            ]
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Only one file allowed per field: intro"}
        assert self.inspector.calls == []
        assert self.invoker.calls == []
        assert self.scratch_contents() == []


class TestCleanupFileResponse:

    def test_send_failure_marks_delivery_failed_and_cleans_up(self, config, make_orchestrator):
        orchestrator = make_orchestrator()
        merge_request = orchestrator.new_request()
        write_inputs(merge_request)

        async def receive():
            await asyncio.Event().wait()

        async def send(message):
            raise RuntimeError("client went away")

        async def scenario():
            output = await orchestrator.process(merge_request)
            response = CleanupFileResponse(
                output,
                merge_request=merge_request,
                orchestrator=orchestrator,
                media_type="video/mp4",
                filename="merged.mp4"
            )
            scope = {"type": "http", "method": "GET", "headers": [], "asgi": {"spec_version": "2.4"}}
            await response(scope, receive, send)

        asyncio.run(scenario())

        assert merge_request.state == MergeState.FAILED
        assert isinstance(merge_request.error, DeliveryError)
        assert "client went away" in merge_request.error.message
        assert merge_request.cleaned_up
        assert list(config.temp_dir.iterdir()) == []
