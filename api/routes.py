import atexit
import logging
import os
import signal
import sys

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from screening.config import Settings
from screening.errors import InternalError, NotFoundError, ScreeningError
from screening.schemas import ResultsQuery, parse
from screening.system import ScreeningSystem

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(lineno)d %(name)s - %(levelname)s - %(message)s"

api = Blueprint("api", __name__)


def get_system() -> ScreeningSystem:
    return current_app.extensions["screening"]


def caller_id(default: str = "system") -> str:
    return request.headers.get("X-User-Id") or default


def caller_ip() -> str:
    return request.headers.get("X-Forwarded-For") or request.remote_addr


@api.route("/health", methods=["GET"])
def health():
    status = get_system().db.ping()
    return jsonify({"status": "ok" if status["connected"] else "degraded", "database": status}), \
        200 if status["connected"] else 503


@api.route("/api/analysis/start", methods=["POST"])
def start_analysis():
    """Submit a job title/description to the external evaluator"""
    data = request.get_json(silent=True) or {}
    result = get_system().dispatcher.submit(data, user_id=request.headers.get("X-User-Id"))
    return jsonify(result)


@api.route("/api/analysis/status/<requirement_id>", methods=["GET"])
def analysis_status(requirement_id):
    status = get_system().jobs.get_status(requirement_id)
    return jsonify({"success": True, **status})


def _results_query() -> ResultsQuery:
    args = request.args.to_dict()
    args.setdefault("limit", get_system().settings.default_results_limit)
    return parse(ResultsQuery, args)


@api.route("/api/analysis/results/<requirement_id>", methods=["GET"])
def analysis_results(requirement_id):
    """Paginated candidates; accepts page, limit, sort, minScore, recommendation, search"""
    results = get_system().results.get_results(requirement_id, _results_query())
    return jsonify(results)


@api.route("/api/analysis/results/<requirement_id>/export", methods=["GET"])
def export_results(requirement_id):
    fmt = request.args.get("format", "csv")
    body = get_system().results.export_results(requirement_id, fmt, _results_query())
    mimetype = "text/csv" if fmt == "csv" else "application/json"
    return Response(
        body,
        mimetype=mimetype,
        headers={"Content-Disposition": f"attachment; filename={requirement_id}-candidates.{fmt}"},
    )


@api.route("/api/jobs", methods=["GET"])
def list_jobs():
    limit = request.args.get("limit", 10, type=int)
    jobs = get_system().jobs.list_jobs(max(1, min(limit, 100)))
    return jsonify({"success": True, "jobs": jobs})


@api.route("/api/jobs/<requirement_id>/queue", methods=["GET"])
def processing_queue(requirement_id):
    queue = get_system().jobs.get_processing_queue(requirement_id)
    return jsonify({"success": True, "queue": queue})


@api.route("/api/jobs/<requirement_id>/errors", methods=["GET"])
def job_errors(requirement_id):
    errors = get_system().jobs.get_error_logs(requirement_id)
    return jsonify({"success": True, "errors": errors})


@api.route("/api/jobs/<requirement_id>/interviews", methods=["GET"])
def job_interviews(requirement_id):
    system = get_system()
    system.jobs.get_job(requirement_id)
    return jsonify({"success": True, "interviews": system.interviews.list_for_job(requirement_id)})


@api.route("/api/errors/<int:error_id>/resolve", methods=["POST"])
def resolve_error(error_id):
    error = get_system().audit.resolve_error(error_id, user_id=caller_id())
    if error is None:
        raise NotFoundError("Error log entry not found")
    return jsonify({"success": True, "error": error})


@api.route("/api/candidates/<candidate_id>", methods=["GET"])
def get_candidate(candidate_id):
    candidate = get_system().results.get_candidate(candidate_id)
    return jsonify({"success": True, "candidate": candidate})


@api.route("/api/interviews", methods=["POST"])
def schedule_interview():
    data = request.get_json(silent=True) or {}
    interview = get_system().interviews.create(data, user_id=caller_id(), ip_address=caller_ip())
    return jsonify({"success": True, "message": "Interview scheduled successfully", "interview": interview}), 201


@api.route("/api/interviews/<int:interview_id>", methods=["GET", "PUT", "DELETE"])
def interview(interview_id):
    scheduler = get_system().interviews

    if request.method == "GET":
        return jsonify({"success": True, "interview": scheduler.get(interview_id)})

    data = request.get_json(silent=True) or {}
    if request.method == "PUT":
        updated = scheduler.update(interview_id, data, user_id=caller_id(), ip_address=caller_ip())
        return jsonify({"success": True, "message": "Interview updated successfully", "interview": updated})

    reason = data.get("reason") or request.args.get("reason")
    cancelled = scheduler.delete(interview_id, reason=reason, user_id=caller_id(), ip_address=caller_ip())
    return jsonify({"success": True, "message": "Interview cancelled successfully", "interview": cancelled})


def register_error_handlers(app: Flask, settings: Settings):
    @app.errorhandler(ScreeningError)
    def handle_screening_error(e):
        if e.status_code >= 500:
            logger.error("%s: %s", type(e).__name__, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"error": e.name, "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        message = str(e) if settings.is_development else "An unexpected error occurred"
        error = InternalError(message)
        return jsonify(error.to_dict()), error.status_code


def configure_logging(level: str = "INFO"):
    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, level.upper(), logging.INFO))


def create_app(settings: Settings = None, system: ScreeningSystem = None) -> Flask:
    settings = settings or (system.settings if system else Settings.from_env())
    configure_logging(settings.log_level)

    app = Flask(__name__)
    CORS(app)
    app.extensions["screening"] = system or ScreeningSystem(settings)
    app.register_blueprint(api)
    register_error_handlers(app, settings)
    return app


if __name__ == "__main__":
    app = create_app()
    atexit.register(app.extensions["screening"].close)
    # SystemExit runs the atexit hooks, closing the pool on SIGTERM
    signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")),
            debug=app.extensions["screening"].settings.is_development)
