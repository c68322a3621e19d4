"""Tests for the OpenAI-backed face detector. The API is mocked."""
from unittest.mock import MagicMock, patch

import pytest
from openai import RateLimitError

from conftest import textured_image
from pipeline.errors import MalformedDetectionError
from utils.face_detection import (
    OpenAIFaceDetector,
    _detect_mime,
    _FaceDetectionSchema,
    _FaceSchema,
)


def _make_llm_response(parsed: _FaceDetectionSchema | None) -> MagicMock:
    mock_choice = MagicMock()
    mock_choice.message.parsed = parsed
    mock_response = MagicMock()
    mock_response.choices = [mock_choice]
    return mock_response


def _rate_limit() -> RateLimitError:
    return RateLimitError("rate limit", response=MagicMock(status_code=429), body={})


def _schema_face(width=0.3, height=0.4, left=0.2, top=0.1, confidence=98.0) -> _FaceSchema:
    return _FaceSchema(width=width, height=height, left=left, top=top, confidence=confidence)


class TestDetect:
    def test_faces_are_converted(self, settings):
        mock_client = MagicMock()
        mock_client.beta.chat.completions.parse.return_value = _make_llm_response(
            _FaceDetectionSchema(faces=[_schema_face(), _schema_face(width=0.1, height=0.1)])
        )
        faces = OpenAIFaceDetector(settings, client=mock_client).detect(textured_image())

        assert len(faces) == 2
        assert faces[0].bounding_box.width == pytest.approx(0.3)
        assert faces[0].confidence == 98.0

    def test_no_faces(self, settings):
        mock_client = MagicMock()
        mock_client.beta.chat.completions.parse.return_value = _make_llm_response(
            _FaceDetectionSchema(faces=[])
        )
        assert OpenAIFaceDetector(settings, client=mock_client).detect(b"\xff\xd8\xff") == []

    def test_request_uses_configured_model_and_data_url(self, settings):
        mock_client = MagicMock()
        mock_client.beta.chat.completions.parse.return_value = _make_llm_response(
            _FaceDetectionSchema(faces=[])
        )
        OpenAIFaceDetector(settings, client=mock_client).detect(textured_image())

        kwargs = mock_client.beta.chat.completions.parse.call_args.kwargs
        assert kwargs["model"] == settings.vision_model
        assert kwargs["response_format"] is _FaceDetectionSchema
        url = kwargs["messages"][1]["content"][0]["image_url"]["url"]
        assert url.startswith("data:image/png;base64,")

    def test_unparsed_response_is_malformed(self, settings):
        mock_client = MagicMock()
        mock_client.beta.chat.completions.parse.return_value = _make_llm_response(None)
        with pytest.raises(MalformedDetectionError):
            OpenAIFaceDetector(settings, client=mock_client).detect(b"img")

    def test_out_of_range_geometry_is_malformed(self, settings):
        mock_client = MagicMock()
        mock_client.beta.chat.completions.parse.return_value = _make_llm_response(
            _FaceDetectionSchema(faces=[_schema_face(width=1.7)])
        )
        with pytest.raises(MalformedDetectionError):
            OpenAIFaceDetector(settings, client=mock_client).detect(b"img")

    def test_transport_errors_propagate(self, settings):
        mock_client = MagicMock()
        mock_client.beta.chat.completions.parse.side_effect = TimeoutError("timed out")
        with pytest.raises(TimeoutError):
            OpenAIFaceDetector(settings, client=mock_client).detect(b"img")

    def test_client_built_from_settings(self, settings):
        with patch("utils.face_detection.OpenAI") as mock_openai:
            OpenAIFaceDetector(settings)
        mock_openai.assert_called_once_with(
            api_key=settings.openai_api_key,
            timeout=settings.face_detection_timeout_s,
            max_retries=0,
        )


class TestRateLimitRetry:
    def test_retries_on_rate_limit(self, settings):
        mock_client = MagicMock()
        mock_client.beta.chat.completions.parse.side_effect = [
            _rate_limit(),
            _rate_limit(),
            _make_llm_response(_FaceDetectionSchema(faces=[_schema_face()])),
        ]
        with patch("utils.face_detection.time_module.sleep") as mock_sleep:
            faces = OpenAIFaceDetector(settings, client=mock_client).detect(b"img")

        assert mock_client.beta.chat.completions.parse.call_count == 3
        assert mock_sleep.call_count == 2
        assert len(faces) == 1

    def test_gives_up_after_max_retries(self, settings):
        mock_client = MagicMock()
        mock_client.beta.chat.completions.parse.side_effect = [_rate_limit() for _ in range(4)]
        with patch("utils.face_detection.time_module.sleep"), pytest.raises(RateLimitError):
            OpenAIFaceDetector(settings, client=mock_client).detect(b"img")
        assert mock_client.beta.chat.completions.parse.call_count == 4


class TestSchema:
    def test_strict_schema_closes_nested_objects(self):
        schema = _FaceDetectionSchema.model_json_schema()
        assert schema["additionalProperties"] is False
        assert schema["required"] == ["faces"]
        face_def = schema["$defs"]["_FaceSchema"]
        assert face_def["additionalProperties"] is False
        assert set(face_def["required"]) == {"width", "height", "left", "top", "confidence"}


@pytest.mark.parametrize("data,expected", [
    (b"\xff\xd8\xff\xe0rest", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\nrest", "image/png"),
    (b"RIFF\x00\x00\x00\x00WEBPrest", "image/webp"),
    (b"unknown", "image/jpeg"),
])
def test_detect_mime(data, expected):
    assert _detect_mime(data) == expected
