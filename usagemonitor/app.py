from __future__ import annotations

import queue
from typing import Any, Iterator, Tuple

from flask import Flask, Response, current_app, jsonify, request

from .http import cors_headers, json_error, sse_message, to_jsonable
from .monitor import UsageMonitor
from .state import TOPICS

_KEEPALIVE_SECONDS = 15.0


def _monitor() -> UsageMonitor:
    return current_app.config["MONITOR"]


def _event_stream(monitor: UsageMonitor) -> Iterator[str]:
    pending: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
    unsubscribers = [
        monitor.subscribe(topic, lambda payload, topic=topic: pending.put((topic, payload)))
        for topic in TOPICS
    ]
    try:
        yield ": connected\n\n"
        while True:
            try:
                topic, payload = pending.get(timeout=_KEEPALIVE_SECONDS)
            except queue.Empty:
                yield ": keepalive\n\n"
                continue
            yield sse_message(topic, payload)
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()


def create_app(monitor: UsageMonitor, verbose: bool = False) -> Flask:
    app = Flask(__name__)

    app.config.update(
        VERBOSE=bool(verbose),
        MONITOR=monitor,
    )

    @app.get("/")
    @app.get("/health")
    def health():
        return jsonify(_monitor().health())

    @app.get("/usage")
    def get_usage():
        return jsonify({"usage": to_jsonable(_monitor().get_usage())})

    @app.get("/account")
    def get_account():
        return jsonify({"account": to_jsonable(_monitor().get_account())})

    @app.get("/error")
    def get_last_error():
        return jsonify({"error": _monitor().get_last_error()})

    @app.post("/refresh")
    def refresh_usage():
        ok, error = _monitor().refresh_usage()
        if not ok:
            return json_error(error or "Usage refresh failed", 502)
        return jsonify({"usage": to_jsonable(_monitor().get_usage())})

    @app.get("/events")
    def events():
        return Response(
            _event_stream(_monitor()),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.after_request
    def _cors(resp):
        for k, v in cors_headers(request.headers.get("Origin")).items():
            resp.headers.setdefault(k, v)
        return resp

    return app
