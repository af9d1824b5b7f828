import atexit
import logging
import os
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(name)s %(levelname)s: %(message)s",
)

from flask import Flask, jsonify
from flask_cors import CORS
from config import Configuration
from services.visualizer import build_visualizer

logger = logging.getLogger(__name__)


def create_app(visualizer=None):
    app = Flask(__name__)
    CORS(app)

    if visualizer is None:
        visualizer = build_visualizer(Configuration.from_env())
    app.config["VISUALIZER"] = visualizer

    # Register blueprints
    from routes.visualizer import visualizer_bp

    app.register_blueprint(visualizer_bp)

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok", "visualizer_enabled": visualizer.enabled})

    return app


if __name__ == "__main__":
    app = create_app()
    viz = app.config["VISUALIZER"]
    atexit.register(viz.disable)

    if os.environ.get("SPECTRUM_AUTOSTART", "1").lower() not in ("0", "false", "no", "off"):
        viz.enable()

    is_dev = os.environ.get("SPECTRUM_ENV") == "dev"
    # The reloader would start a second pair of light loops
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5000")), debug=is_dev, use_reloader=False)
