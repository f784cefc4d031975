"""
Module 8: API & Orchestration (The Flask Backend)
=================================================
Responsible for:
  - Exposing /transform (multipart image upload + slider/effect JSON)
  - Routing images through: decode → face detection → warp pipeline → effects
  - Computing the facial difference between the original and the output
  - Returning the result as a base64 PNG inside a JSON payload
  - Keeping the heavy models (FaceMesh, CLIP) loaded between requests
"""

import json
import logging
import time
import warnings

from flask import Flask, jsonify, request
from flask_cors import CORS

from facewarp.config import AppConfig
from facewarp.datatypes import EffectOptions, RasterImage, SliderValues
from facewarp.errors import InvalidInput, MissingMaskAssetWarning, ModelUnavailable
from facewarp.module1_region import derive_region
from facewarp.module2_displacement import render_vector_field
from facewarp.module4_effects import draw_landmarks
from facewarp.module5_pipeline import FaceWarpPipeline
from facewarp.module6_vision import VisionModule
from facewarp.module7_descriptor import DescriptorModule, describe_difference

logger = logging.getLogger("facewarp.api")

ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "webp"}
OVERLAYS = {"none", "landmarks", "vectors"}


def _allowed_file(filename: str) -> bool:
    """Check that the uploaded file has an acceptable extension."""
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _json_field(name: str) -> dict:
    raw = request.form.get(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidInput(f"Field '{name}' is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise InvalidInput(f"Field '{name}' must be a JSON object")
    return value


def _seed_field():
    raw = request.form.get("seed", "").strip()
    if not raw:
        return None
    try:
        seed = int(raw)
    except ValueError as exc:
        raise InvalidInput(f"Field 'seed' must be an integer, got '{raw}'") from exc
    if seed < 0:
        raise InvalidInput("Field 'seed' must be non-negative")
    return seed


class _UnsupportedType(Exception):
    """Upload with an extension outside ALLOWED_EXTENSIONS."""


def _read_upload(field: str, required: bool = True):
    """Return the decoded RasterImage for a multipart file field, or None."""
    if field not in request.files:
        if required:
            raise InvalidInput(f"No '{field}' field in request.")
        return None

    file = request.files[field]
    if file.filename == "":
        raise InvalidInput(f"Empty filename for '{field}'.")
    if not _allowed_file(file.filename):
        raise _UnsupportedType(file.filename)

    data = file.read()
    logger.info("Received '%s' upload: '%s' (%d bytes)", field, file.filename, len(data))
    return RasterImage.from_bytes(data)


def create_app(
    config:     AppConfig = None,
    pipeline:   FaceWarpPipeline = None,
    vision:     VisionModule = None,
    descriptor: DescriptorModule = None,
) -> Flask:
    """
    Build the Flask application.

    Collaborators are created from ``config`` unless injected; models load
    lazily on the first request that needs them.
    """
    config = config or AppConfig()

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.max_upload_bytes
    CORS(app)

    pipeline = pipeline or FaceWarpPipeline(config.engine)
    vision = vision or VisionModule()
    if descriptor is None and config.descriptor_enabled:
        descriptor = DescriptorModule(model_id=config.clip_model_id)

    logger.info("facewarp API ready (descriptor=%s).", "on" if descriptor else "off")

    # ---------------------------------------------------------------------
    # Routes
    # ---------------------------------------------------------------------

    @app.route("/health", methods=["GET"])
    def health():
        """Liveness probe plus model load states."""
        models = {"vision": vision.loader.state.value}
        if descriptor is not None:
            models["descriptor"] = descriptor.loader.state.value
        return jsonify({"status": "ok", "service": "facewarp", "models": models}), 200

    @app.route("/detect", methods=["POST"])
    def detect():
        """POST /detect — face box and landmarks for an uploaded image."""
        try:
            image = _read_upload("image")
            detection = vision.detect(image)
        except _UnsupportedType:
            return _error(f"Unsupported file type. Allowed: {sorted(ALLOWED_EXTENSIONS)}", 415)
        except InvalidInput as exc:
            return _error(str(exc), 400)
        except ModelUnavailable as exc:
            return _error(str(exc), 503)

        if detection is None:
            return jsonify({"success": True, "face_detected": False, "detection": None}), 200
        return jsonify({"success": True, "face_detected": True, "detection": detection.to_dict()}), 200

    @app.route("/transform", methods=["POST"])
    def transform():
        """
        POST /transform
        ===============
        Multipart fields
        ----------------
        image    : file (required)
        sliders  : JSON object of slider values, e.g. {"eyeSize": 20}
        effect   : JSON object, e.g. {"effectType": "blur", "effectIntensity": 12}
        mask     : file, used by the "mask" effect
        seed     : integer, makes the noise term reproducible
        overlay  : "none" | "landmarks" | "vectors"

        Response Schema
        ---------------
        {
            "success":           bool,
            "face_detected":     bool,
            "image":             str,          # base64-encoded PNG
            "overlay_image":     str | null,
            "facial_difference": float | null,
            "assessment":        str,
            "warnings":          [str],
            "processing_time_s": float
        }
        """
        t_start = time.perf_counter()

        try:
            source = _read_upload("image")
            mask = _read_upload("mask", required=False)
            sliders = SliderValues.from_mapping(_json_field("sliders"))
            effect = EffectOptions.from_mapping(_json_field("effect"), mask_image=mask)
            seed = _seed_field()
            overlay = request.form.get("overlay", "none")
            if overlay not in OVERLAYS:
                raise InvalidInput(f"Unknown overlay '{overlay}'. Allowed: {sorted(OVERLAYS)}")
        except _UnsupportedType:
            return _error(f"Unsupported file type. Allowed: {sorted(ALLOWED_EXTENSIONS)}", 415)
        except (InvalidInput, ValueError, TypeError) as exc:
            return _error(str(exc), 400)

        try:
            detection = vision.detect(source)

            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always", MissingMaskAssetWarning)
                result = pipeline.run(source, sliders, detection, effect, seed=seed)
            notices = [str(w.message) for w in caught if issubclass(w.category, MissingMaskAssetWarning)]

            overlay_image = None
            if overlay == "landmarks" and detection is not None:
                overlay_image = draw_landmarks(result, detection).to_base64()
            elif overlay == "vectors":
                region = derive_region(source.width, source.height, detection, pipeline.config)
                overlay_image = render_vector_field(source, region, sliders, config=pipeline.config).to_base64()

            difference = None
            if descriptor is not None:
                try:
                    difference, _, _ = descriptor.compare(source, result)
                except ModelUnavailable as exc:
                    logger.warning("Descriptor unavailable: %s", exc)
                    notices.append("Facial difference unavailable: descriptor model not loaded.")

            elapsed = round(time.perf_counter() - t_start, 3)
            logger.info("Request completed in %.3f seconds.", elapsed)

            return jsonify({
                "success":           True,
                "face_detected":     detection is not None,
                "image":             result.to_base64(),
                "overlay_image":     overlay_image,
                "facial_difference": None if difference is None else round(float(difference), 4),
                "assessment":        describe_difference(difference),
                "warnings":          notices,
                "processing_time_s": elapsed,
            }), 200

        except InvalidInput as exc:
            return _error(str(exc), 400)
        except ModelUnavailable as exc:
            return _error(str(exc), 503)
        except Exception as exc:
            logger.exception("Unhandled error during /transform: %s", exc)
            return _error(f"Internal server error: {exc}", 500)

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    config = AppConfig.from_env()
    app = create_app(config)
    logger.info("Starting facewarp Flask server on port %d (debug=%s)", config.port, config.debug)
    app.run(host="0.0.0.0", port=config.port, debug=config.debug, threaded=False)
    # threaded=False: the FaceMesh graph and CLIP model are shared process-wide


if __name__ == "__main__":
    main()
