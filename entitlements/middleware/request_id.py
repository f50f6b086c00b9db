import re
import uuid

from flask import g, request

REQUEST_ID_HEADER = "X-Request-ID"
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def init_request_id_middleware(app):
    """
    Attach a correlation id to every request and echo it back.
    Caller-supplied ids are kept when they look sane.
    """

    @app.before_request
    def assign_request_id():
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        g.request_id = incoming if _VALID_REQUEST_ID.match(incoming) else str(uuid.uuid4())

    @app.after_request
    def add_request_id_header(response):
        response.headers[REQUEST_ID_HEADER] = g.get("request_id", "")
        return response
