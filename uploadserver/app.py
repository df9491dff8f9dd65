import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from flask import (
    Flask,
    Response,
    g,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    send_file,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from markupsafe import escape
from werkzeug.exceptions import HTTPException

from .config import DEFAULT_UPLOAD_RATE_LIMIT, ServerConfig, load_config
from .errors import (
    MethodNotAllowedError,
    NotFoundError,
    PathTraversalError,
    PermissionDeniedError,
    UploadServerError,
)
from .logs import RequestAwareLogger, sanitize_log_value
from .storage import DirectoryEntry, list_directory, relative_url_path, resolve_path
from .uploads import handle_upload

UPLOAD_ENDPOINT = "/upload"

_HTTP_ERROR_REASONS = {
    404: NotFoundError.reason,
    405: MethodNotAllowedError.reason,
    413: "too_large",
    429: "rate_limited",
}


def human_filesize(num: Optional[int]) -> str:
    if num is None:
        return "-"
    if num < 1024:
        return f"{num} B"
    size = float(num)
    for unit in ["KB", "MB", "GB", "TB"]:
        size /= 1024.0
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}"
    return f"{size:.2f} PB"


def human_datetime(value: float) -> str:
    dt = datetime.fromtimestamp(value, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def _wants_json(default_json: bool = False) -> bool:
    """Pick JSON or HTML from ``?format=`` first, then the Accept header."""

    requested = (request.args.get("format") or "").lower()
    if requested in {"json", "html"}:
        return requested == "json"
    preferred = ["application/json", "text/html"] if default_json else ["text/html", "application/json"]
    best = request.accept_mimetypes.best_match(preferred, default=preferred[0])
    return best == "application/json"


def _error_response(status: int, payload: Dict[str, Any], json_default: bool) -> Response:
    if _wants_json(default_json=json_default):
        return make_response(jsonify(payload), status)
    message = escape(payload.get("error", "Error"))
    body = (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        f"<title>{status} {message}</title></head>"
        f"<body><h1>{status}</h1><p>{message}</p>"
        f"<p><a href=\"{escape(url_for('browse'))}\">Back to index</a></p></body></html>"
    )
    return make_response(body, status)


def create_app(config: Optional[ServerConfig] = None, logger: Optional[logging.Logger] = None) -> Flask:
    """Build the WSGI application serving ``config.root``.

    *logger* receives every lifecycle event (requests, uploads, failures);
    it defaults to the ``uploadserver.lifecycle`` logger.
    """

    config = config or load_config()
    lifecycle_logger = RequestAwareLogger(logger or logging.getLogger("uploadserver.lifecycle"))

    app = Flask(__name__)
    app.config["UPLOADSERVER"] = config
    app.config["RATELIMIT_ENABLED"] = bool(config.upload_rate_limit)
    app.json.sort_keys = False
    app.jinja_env.filters["human_filesize"] = human_filesize
    app.jinja_env.filters["human_datetime"] = human_datetime

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[],
        storage_uri="memory://",
    )

    def entry_payload(relative_dir: str, entry: DirectoryEntry) -> Dict[str, Any]:
        suffix = "/" if entry.is_dir else ""
        return {
            "name": entry.name,
            "is_dir": entry.is_dir,
            "size": entry.size,
            "modified": entry.modified,
            "url": url_for("browse", req_path=f"{relative_dir}{entry.name}{suffix}"),
        }

    def render_listing(target: Path) -> Union[Response, str]:
        relative = relative_url_path(config.root, target)
        relative_dir = f"{relative}/" if relative else ""
        entries = list_directory(target)
        upload_url = url_for("upload", dir=relative) if relative else url_for("upload")
        listing: List[Dict[str, Any]] = [entry_payload(relative_dir, entry) for entry in entries]

        if _wants_json():
            return jsonify(
                {
                    "path": f"/{relative_dir}",
                    "entries": listing,
                    "upload_url": upload_url,
                }
            )

        parent_url = None
        if relative:
            parent = relative.rsplit("/", 1)[0] if "/" in relative else ""
            parent_url = url_for("browse", req_path=f"{parent}/" if parent else "")
        return render_template(
            "listing.html",
            current_path=f"/{relative_dir}",
            entries=listing,
            parent_url=parent_url,
            upload_url=upload_url,
            keep_original_name=config.keep_original_name,
        )

    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.after_request
    def log_request_completion(response: Response):
        """Emit lifecycle logs for every completed request."""

        lifecycle_logger.info(
            "request_completed method=%s path=%s status=%d size=%s",
            request.method,
            sanitize_log_value(request.path),
            response.status_code,
            response.content_length or 0,
        )
        return response

    @app.after_request
    def add_response_headers(response: Response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "same-origin"
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.errorhandler(UploadServerError)
    def handle_upload_server_error(error: UploadServerError):
        if isinstance(error, PathTraversalError):
            lifecycle_logger.warning(
                "path_traversal_attempt path=%s ip=%s",
                sanitize_log_value(request.path),
                request.remote_addr or "unknown",
            )
        elif error.status_code >= 500:
            lifecycle_logger.error(
                "request_failed reason=%s path=%s error=%s detail=%s",
                error.reason,
                sanitize_log_value(request.path),
                sanitize_log_value(str(error)),
                sanitize_log_value(error.detail or ""),
            )
        else:
            lifecycle_logger.info(
                "request_rejected reason=%s path=%s error=%s",
                error.reason,
                sanitize_log_value(request.path),
                sanitize_log_value(str(error)),
            )
        return _error_response(error.status_code, error.to_payload(), request.method == "POST")

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        status = error.code or 500
        if status == 405:
            payload = MethodNotAllowedError(
                f"Method {request.method} is not allowed for this path"
            ).to_payload()
        else:
            payload = {
                "error": error.name,
                "reason": _HTTP_ERROR_REASONS.get(status, "http_error"),
                "status": status,
            }
            if status == 429 and error.description:
                payload["detail"] = str(error.description)
        lifecycle_logger.info(
            "request_rejected reason=%s method=%s path=%s",
            payload["reason"],
            request.method,
            sanitize_log_value(request.path),
        )
        response = _error_response(status, payload, request.method == "POST")
        for header, value in error.get_headers():
            if header.lower() in {"allow", "retry-after"}:
                response.headers[header] = value
        return response

    @app.route("/", defaults={"req_path": ""}, methods=["GET"])
    @app.route("/<path:req_path>", methods=["GET"])
    def browse(req_path: str):
        target = resolve_path(config.root, req_path, must_exist=True)

        if target.is_dir():
            if req_path and not request.path.endswith("/"):
                location = url_for("browse", req_path=f"{req_path}/")
                if request.query_string:
                    location = f"{location}?{request.query_string.decode('latin-1')}"
                return redirect(location, code=301)
            return render_listing(target)

        if not target.is_file():
            raise NotFoundError("Path is not a regular file")

        as_attachment = (request.args.get("download") or "").lower() in {"1", "true", "yes"}
        lifecycle_logger.debug(
            "file_downloaded path=%s attachment=%s",
            sanitize_log_value(relative_url_path(config.root, target)),
            as_attachment,
        )
        try:
            return send_file(target, conditional=True, as_attachment=as_attachment)
        except FileNotFoundError as error:
            raise NotFoundError("Path not found") from error
        except PermissionError as error:
            raise PermissionDeniedError("Path is not readable") from error

    @app.route(UPLOAD_ENDPOINT, methods=["POST"])
    @limiter.limit(lambda: config.upload_rate_limit or DEFAULT_UPLOAD_RATE_LIMIT)
    def upload():
        directory = request.args.get("dir", "")
        result = handle_upload(
            request.stream,
            request.content_type,
            config.root,
            directory=directory,
            keep_original=config.keep_original_name,
            max_upload_bytes=config.max_upload_bytes,
            logger=lifecycle_logger,
        )
        stored = result.stored
        file_url = url_for("browse", req_path=stored.relative_path)
        parent = stored.relative_path.rsplit("/", 1)[0] if "/" in stored.relative_path else ""
        directory_url = url_for("browse", req_path=f"{parent}/" if parent else "")
        payload: Dict[str, Any] = {
            "filename": stored.filename,
            "size": stored.size,
            "path": f"/{stored.relative_path}",
            "url": file_url,
            "ignored_parts": result.ignored_parts,
            "message": "File uploaded successfully.",
        }
        if _wants_json(default_json=True):
            response = jsonify(payload)
            response.status_code = 201
        else:
            response = make_response(
                render_template(
                    "uploaded.html",
                    upload=payload,
                    directory_url=directory_url,
                ),
                201,
            )
        response.headers["Location"] = file_url
        return response

    return app
