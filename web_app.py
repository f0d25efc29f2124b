"""
BOXENGINE — Provably Fair Mystery Box Service
"""
import logging

from dotenv import load_dotenv
load_dotenv()

from config.settings import ServerConfig

# ── Structured logging ──
logging.basicConfig(
    level=getattr(logging, ServerConfig.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("boxengine")

from flask import Flask, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from config.database import close_db_on_teardown, get_db, get_standalone_db, init_db, migrate_db


def create_app(db_factory=None, init_schema=True):
    """Build the Flask app.

    db_factory: zero-arg callable returning a DatabaseConnection. Defaults to
    DATABASE_URL / DB_PATH; tests pass a temp SQLite file.
    """
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # Behind a reverse proxy
    app.config["DB_FACTORY"] = db_factory
    app.config["MAX_CONTENT_LENGTH"] = 1 * 1024 * 1024  # Item catalogues, not uploads
    app.json.sort_keys = False

    if init_schema:
        db = (db_factory or get_standalone_db)()
        try:
            init_db(db)
            migrate_db(db)
        finally:
            db.close()

    from api import api_bp
    app.register_blueprint(api_bp)
    logger.info("Registered API blueprint at /api/")

    app.teardown_appcontext(close_db_on_teardown)

    @app.route("/health")
    def health_check():
        """Health check — verifies web server + database are responsive."""
        try:
            db = get_db()
            db.execute("SELECT 1").fetchone()
            return jsonify({"status": "ok"}), 200
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return jsonify({"status": "error", "detail": str(e)}), 503

    @app.errorhandler(404)
    def error_404(e):
        if request.path.startswith("/api/"):
            return jsonify({"error": "Not found", "kind": "NOT_FOUND"}), 404
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def error_500(e):
        logger.error(f"500 error: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    return app


if __name__ == "__main__":
    app = create_app()
    logger.info(f"BOXENGINE — http://localhost:{ServerConfig.PORT}")
    app.run(debug=ServerConfig.DEBUG, host=ServerConfig.HOST, port=ServerConfig.PORT)
