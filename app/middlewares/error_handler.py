from __future__ import annotations

import logging
from typing import Any

from flask import Flask, g, jsonify, render_template, request
from werkzeug.exceptions import HTTPException

from app.utils.errors import ApiError
from app.verification.errors import VerificationError


def _wants_json() -> bool:
    return request.path.startswith("/api/") or request.accept_mimetypes.best == "application/json"


def _page(title: str, message: str, status: int):
    return (
        render_template(
            "message.html",
            title=title,
            message=message,
            request_id=getattr(g, "request_id", ""),
        ),
        status,
    )


def init_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(err: ApiError):
        if not _wants_json():
            return _page("Please try again", err.message, err.status)
        return jsonify(err.to_payload(getattr(g, "request_id", None))), err.status

    @app.errorhandler(VerificationError)
    def _verification_error(err: VerificationError):
        # Candidates only ever see the safe message; details stay in the logs.
        if not _wants_json():
            return _page(err.title, err.message, err.status)
        payload: dict[str, Any] = {
            "success": False,
            "error": {"code": err.code, "message": err.message, "details": err.details or None},
        }
        if getattr(g, "request_id", None):
            payload["request_id"] = g.request_id
        return jsonify(payload), err.status

    @app.errorhandler(HTTPException)
    def _http_error(err: HTTPException):
        status = int(err.code or 500)
        if not _wants_json():
            return _page(str(err.name or "Error"), "This page isn't available.", status)
        api_err = ApiError(f"HTTP_{status}", str(err.description or "HTTP error"), status=status)
        return jsonify(api_err.to_payload(getattr(g, "request_id", None))), status

    @app.errorhandler(Exception)
    def _unhandled(err: Exception):
        logging.getLogger("app").exception(
            "Unhandled exception request_id=%s", getattr(g, "request_id", "")
        )
        if not _wants_json():
            return _page("Something went wrong", "Please try again in a few minutes.", 500)
        api_err = ApiError("INTERNAL", "Unexpected error", status=500)
        return jsonify(api_err.to_payload(getattr(g, "request_id", None))), 500
