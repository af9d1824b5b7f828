import logging

from flask import Blueprint, current_app, jsonify, request

from config import TOGGLE_KEYS, MANUAL_COLOR_KEYS, ConfigError

logger = logging.getLogger(__name__)

visualizer_bp = Blueprint("visualizer", __name__)

# Settings read once when the collaborators are built; changing them needs a restart
RESTART_KEYS = (
    "serial_port",
    "baud_rate",
    "hue_bridge_ip",
    "hue_username",
    "hue_light_ids",
    "audio_pipe",
    "sample_rate",
    "fft_size",
    "fft_bin_hz",
    "matrix_width",
    "matrix_height",
    "audio_input_in_separate_thread",
    "hue_output_in_separate_thread",
    "leds_output_in_separate_thread",
)


def _visualizer():
    return current_app.config["VISUALIZER"]


@visualizer_bp.get("/api/visualizer/status")
def status():
    return jsonify(_visualizer().get_status())


@visualizer_bp.post("/api/visualizer/enable")
def enable():
    viz = _visualizer()
    try:
        viz.enable()
    except OSError as e:
        logger.exception("Could not enable visualizer")
        return jsonify({"error": str(e)}), 502
    return jsonify({"enabled": viz.enabled})


@visualizer_bp.post("/api/visualizer/disable")
def disable():
    viz = _visualizer()
    viz.disable()
    return jsonify({"enabled": viz.enabled})


@visualizer_bp.post("/api/visualizer/config")
def update_config():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({"error": "a JSON object of settings is required"}), 400

    blocked = sorted(key for key in data if key in RESTART_KEYS)
    if blocked:
        return jsonify({"error": f"cannot change while running: {', '.join(blocked)}"}), 400

    viz = _visualizer()
    try:
        applied = viz.config.update(data)
    except ConfigError as e:
        return jsonify({"error": str(e)}), 400

    # Overrides are pushed to the bulbs by the silent animation branch
    if any(key in applied for key in TOGGLE_KEYS + MANUAL_COLOR_KEYS):
        viz.request_refresh()
    return jsonify(viz.config.to_dict())
