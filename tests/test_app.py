import base64
import io
import json

import numpy as np
import pytest

from facewarp.app import create_app
from facewarp.config import AppConfig
from facewarp.datatypes import Detection, FaceBox, RasterImage
from facewarp.errors import ModelUnavailable
from facewarp.model_loader import ModelLoader
from facewarp.module5_pipeline import FaceWarpPipeline


class FakeVision:
    def __init__(self, detection=None, error=None):
        self.loader = ModelLoader("fake mesh", object)
        self.detection = detection
        self.error = error

    def detect(self, image):
        if self.error is not None:
            raise self.error
        return self.detection


class FakeDescriptor:
    def __init__(self, score=0.8, error=None):
        self.loader = ModelLoader("fake clip", object)
        self.score = score
        self.error = error

    def compare(self, original, modified):
        if self.error is not None:
            raise self.error
        return self.score, np.zeros(4), np.zeros(4)


def _png(width=64, height=48, seed=0):
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    return RasterImage.from_array(pixels).to_png_bytes()


def _decode(b64):
    return RasterImage.from_bytes(base64.b64decode(b64))


@pytest.fixture
def make_client():
    pipelines = []

    def _make(vision=None, descriptor=None, config=None):
        pipeline = FaceWarpPipeline()
        pipelines.append(pipeline)
        app = create_app(
            config=config or AppConfig(),
            pipeline=pipeline,
            vision=vision or FakeVision(),
            descriptor=descriptor or FakeDescriptor(),
        )
        app.config["TESTING"] = True
        return app.test_client()

    yield _make
    for pipeline in pipelines:
        pipeline.close()


def _post(client, route="/transform", image=True, filename="face.png", **fields):
    data = {key: value for key, value in fields.items()}
    if image:
        data["image"] = (io.BytesIO(_png()), filename)
    return client.post(route, data=data, content_type="multipart/form-data")


def test_health_reports_model_states(make_client):
    response = make_client().get("/health")
    body = response.get_json()
    assert response.status_code == 200
    assert body["status"] == "ok"
    assert body["models"] == {"vision": "unloaded", "descriptor": "unloaded"}


def test_transform_requires_an_image(make_client):
    response = _post(make_client(), image=False)
    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_transform_rejects_unsupported_types(make_client):
    response = _post(make_client(), filename="face.gif")
    assert response.status_code == 415


def test_transform_rejects_bad_slider_json(make_client):
    response = _post(make_client(), sliders="{not json")
    assert response.status_code == 400
    assert "sliders" in response.get_json()["error"]


def test_transform_rejects_unknown_overlay(make_client):
    response = _post(make_client(), overlay="heatmap")
    assert response.status_code == 400


def test_transform_round_trip(make_client):
    detection = Detection(box=FaceBox(10, 8, 40, 30))
    client = make_client(vision=FakeVision(detection))
    response = _post(
        client,
        sliders=json.dumps({"eyeSize": 25, "faceWidth": -20, "noiseLevel": 5}),
        seed="4",
    )
    body = response.get_json()

    assert response.status_code == 200
    assert body["success"] is True
    assert body["face_detected"] is True
    assert body["facial_difference"] == 0.8
    assert body["assessment"] == "likely defeats recognition"
    assert body["warnings"] == []
    assert body["overlay_image"] is None

    image = _decode(body["image"])
    assert (image.width, image.height) == (64, 48)


def test_transform_is_reproducible_with_seed(make_client):
    client = make_client()
    sliders = json.dumps({"noiseLevel": 25})
    first = _post(client, sliders=sliders, seed="12").get_json()["image"]
    second = _post(client, sliders=sliders, seed="12").get_json()["image"]
    assert first == second


def test_mask_without_image_is_reported_as_warning(make_client):
    response = _post(make_client(), effect=json.dumps({"effectType": "mask", "effectIntensity": 10}))
    body = response.get_json()
    assert response.status_code == 200
    assert len(body["warnings"]) == 1
    assert "mask" in body["warnings"][0].lower()


def test_mask_upload_is_composited(make_client):
    client = make_client()
    mask = RasterImage.blank(8, 8, (255, 0, 0, 255)).to_png_bytes()
    response = client.post(
        "/transform",
        data={
            "image": (io.BytesIO(_png()), "face.png"),
            "mask": (io.BytesIO(mask), "mask.png"),
            "sliders": json.dumps({"noiseLevel": 0}),
            "effect": json.dumps({"effectType": "mask", "effectIntensity": 10}),
        },
        content_type="multipart/form-data",
    )
    body = response.get_json()
    assert response.status_code == 200
    assert body["warnings"] == []
    image = _decode(body["image"])
    # heuristic region centre of a 64×48 image
    assert image.pixels[24, 32, 0] > 200


@pytest.mark.parametrize("overlay", ["landmarks", "vectors"])
def test_overlays(make_client, overlay):
    detection = Detection(box=FaceBox(10, 8, 40, 30))
    client = make_client(vision=FakeVision(detection))
    response = _post(client, overlay=overlay, sliders=json.dumps({"jawline": 40}))
    body = response.get_json()
    assert response.status_code == 200
    assert body["overlay_image"] is not None
    assert _decode(body["overlay_image"]).width == 64


def test_no_face_uses_heuristic_region(make_client):
    response = _post(make_client(vision=FakeVision(None)), sliders=json.dumps({"eyeSize": 30}))
    body = response.get_json()
    assert response.status_code == 200
    assert body["face_detected"] is False


def test_descriptor_failure_degrades_gracefully(make_client):
    descriptor = FakeDescriptor(error=ModelUnavailable("CLIP offline"))
    response = _post(make_client(descriptor=descriptor))
    body = response.get_json()
    assert response.status_code == 200
    assert body["facial_difference"] is None
    assert body["assessment"] == "unavailable"
    assert body["warnings"]


def test_vision_failure_is_service_unavailable(make_client):
    client = make_client(vision=FakeVision(error=ModelUnavailable("mesh offline")))
    assert _post(client).status_code == 503


def test_descriptor_can_be_disabled():
    app = create_app(
        config=AppConfig(descriptor_enabled=False),
        pipeline=FaceWarpPipeline(),
        vision=FakeVision(),
    )
    body = app.test_client().get("/health").get_json()
    assert "descriptor" not in body["models"]
    response = _post(app.test_client())
    assert response.get_json()["facial_difference"] is None


def test_detect_route(make_client):
    detection = Detection(box=FaceBox(1, 2, 3, 4), landmarks=np.array([[1.0, 2.0]]))
    response = _post(make_client(vision=FakeVision(detection)), route="/detect")
    body = response.get_json()
    assert response.status_code == 200
    assert body["detection"]["box"] == {"x": 1.0, "y": 2.0, "width": 3.0, "height": 4.0}
    assert body["detection"]["landmarks"] == [{"x": 1.0, "y": 2.0}]


def test_detect_without_face(make_client):
    body = _post(make_client(), route="/detect").get_json()
    assert body["face_detected"] is False


def test_transform_rejects_non_object_mask_position(make_client):
    effect = json.dumps({"effectType": "blur", "effectIntensity": 5, "maskPosition": [0.1, 0.2]})
    response = _post(make_client(), effect=effect)
    assert response.status_code == 400
    assert "maskPosition" in response.get_json()["error"]


@pytest.mark.parametrize("seed", ["abc", "1.5", "-3"])
def test_transform_rejects_bad_seed(make_client, seed):
    response = _post(make_client(), seed=seed)
    assert response.status_code == 400
    assert "seed" in response.get_json()["error"]


def test_oversized_upload_is_rejected(make_client, monkeypatch):
    from PIL import Image

    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    response = _post(make_client())
    assert response.status_code == 400
    assert response.get_json()["success"] is False
