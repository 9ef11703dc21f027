"""Flask application factory for the ReplayForge web API."""

from flask import Flask, jsonify

from replayforge.settings import Settings, load_settings


def create_app(settings: Settings | None = None) -> Flask:
    app = Flask(__name__)
    app.config["SETTINGS"] = settings if settings is not None else load_settings()

    from replayforge.web.routes import bp
    app.register_blueprint(bp)

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Not found"}), 404

    return app
