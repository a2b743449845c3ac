"""
Flask HTTP surface over the episode controller, the aggregator and the
terminology client.
"""

from typing import Any

import structlog
from fhir import OperationOutcome
from flask import Blueprint, Flask, current_app, jsonify, request
from flask.typing import ResponseReturnValue

from clinical_gateway.common.log_config import configure_logging
from clinical_gateway.config import load_settings
from clinical_gateway.errors import (
    AuthError,
    ClinicalGatewayError,
    ConfigurationError,
    NotFoundError,
    RemoteError,
    RequestTimeoutError,
    ResponseParseError,
    ServerContractError,
    StateError,
    ValidationError,
)
from clinical_gateway.services import Services, build_services
from clinical_gateway.terminology import OclClient
from clinical_gateway.timeline import AggregatedView

logger = structlog.get_logger(__name__)

EXTENSION_KEY = "clinical_gateway"

# Most specific first: NotFoundError is also a RemoteError
ERROR_STATUSES: list[tuple[type[ClinicalGatewayError], int, str]] = [
    (ValidationError, 400, "invalid"),
    (AuthError, 401, "security"),
    (NotFoundError, 404, "not-found"),
    (StateError, 409, "conflict"),
    (ServerContractError, 502, "exception"),
    (ResponseParseError, 502, "exception"),
    (RemoteError, 502, "exception"),
    (RequestTimeoutError, 504, "timeout"),
    (ConfigurationError, 500, "exception"),
]

api = Blueprint("clinical_gateway", __name__)


def _services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _bool_field(body: dict[str, Any], name: str) -> bool:
    value = body.get(name, False)
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a JSON boolean")
    return value


def _int_arg(name: str) -> int | None:
    value = request.args.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as err:
        raise ValidationError(f"query parameter {name} must be an integer") from err


def _bool_arg(name: str) -> bool | None:
    value = request.args.get(name)
    if value is None:
        return None
    return value.lower() in ("1", "true", "yes")


def _view(view: AggregatedView) -> dict[str, Any]:
    return {"resources": dict(view), "failures": view.failures}


def operation_outcome(status_code: int, code: str, text: str) -> OperationOutcome:
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {
                "severity": "error" if status_code < 500 else "fatal",
                "code": code,
                "details": {"text": text},
            }
        ],
    }


def handle_gateway_error(err: ClinicalGatewayError) -> ResponseReturnValue:
    status_code, code = 500, "exception"
    for error_class, error_status, error_code in ERROR_STATUSES:
        if isinstance(err, error_class):
            status_code, code = error_status, error_code
            break

    log = logger.warning if status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.path,
        status=status_code,
        error_type=type(err).__name__,
        error=str(err),
    )
    return jsonify(operation_outcome(status_code, code, str(err))), status_code


@api.route("/health", methods=["GET"])
def health_check() -> ResponseReturnValue:
    return {"status": "healthy"}


# --------------- episodes -----------------


@api.route("/episodes/otp", methods=["POST"])
def start_episode_by_otp() -> ResponseReturnValue:
    body = _json_body()
    payload = _services().episodes.start_by_otp(
        patient_id=body.get("patientId"),  # type: ignore[arg-type]
        provider_code=body.get("providerCode"),  # type: ignore[arg-type]
        msisdn=body.get("msisdn"),  # type: ignore[arg-type]
        otp=body.get("otp"),  # type: ignore[arg-type]
        full_access=_bool_field(body, "fullAccess"),
    )
    return payload.to_dict(), 201


@api.route("/episodes/break-glass", methods=["POST"])
def start_episode_by_break_glass() -> ResponseReturnValue:
    body = _json_body()
    payload = _services().episodes.start_by_break_glass(
        practitioner_uid=body.get("practitionerUid"),  # type: ignore[arg-type]
        patient_id=body.get("patientId"),  # type: ignore[arg-type]
        provider_code=body.get("providerCode"),  # type: ignore[arg-type]
        otp=body.get("otp"),  # type: ignore[arg-type]
        provider_phone=body.get("providerPhone"),  # type: ignore[arg-type]
        patient_phone=body.get("patientPhone"),  # type: ignore[arg-type]
        full_access=_bool_field(body, "fullAccess"),
    )
    return payload.to_dict(), 201


@api.route("/episodes/<episode_id>/upgrade", methods=["POST"])
def upgrade_episode(episode_id: str) -> ResponseReturnValue:
    body = _json_body()
    payload = _services().episodes.upgrade_episode(
        episode_id,
        otp=body.get("otp"),  # type: ignore[arg-type]
        msisdn=body.get("msisdn"),  # type: ignore[arg-type]
    )
    return payload.to_dict()


@api.route("/episodes/<episode_id>/end", methods=["POST"])
def end_episode(episode_id: str) -> ResponseReturnValue:
    return {"ended": _services().episodes.end_episode(episode_id)}


@api.route("/episodes/<episode_id>/encounters", methods=["POST"])
def start_encounter(episode_id: str) -> ResponseReturnValue:
    encounter_id = _services().episodes.start_encounter(episode_id)
    return {"encounterId": encounter_id}, 201


@api.route("/encounters/<encounter_id>/end", methods=["POST"])
def end_encounter(encounter_id: str) -> ResponseReturnValue:
    return {"ended": _services().episodes.end_encounter(encounter_id)}


@api.route("/patients/<patient_id>/episodes", methods=["GET"])
def patient_episodes(patient_id: str) -> ResponseReturnValue:
    episodes = _services().episodes.open_episodes(patient_id)
    return {"episodes": [e.to_dict() for e in episodes]}


@api.route("/organizations/<provider_code>/episodes", methods=["GET"])
def organization_episodes(provider_code: str) -> ResponseReturnValue:
    episodes = _services().episodes.open_organization_episodes(provider_code)
    return {"episodes": [e.to_dict() for e in episodes]}


# --------------- aggregated views -----------------


@api.route("/encounters/<encounter_id>/summary", methods=["GET"])
def visit_summary(encounter_id: str) -> ResponseReturnValue:
    view = _services().timeline.visit_summary(encounter_id, _int_arg("count"))
    return _view(view)


@api.route("/episodes/<episode_id>/timeline", methods=["GET"])
def patient_timeline(episode_id: str) -> ResponseReturnValue:
    count = _int_arg("count")
    timeline = _services().timeline
    if count is None:
        views = timeline.patient_timeline(episode_id)
    else:
        views = timeline.patient_timeline_with_count(episode_id, count)
    return {"timeline": [_view(v) for v in views]}


@api.route("/patients/<patient_id>/allergies/summary", methods=["GET"])
def allergy_summary(patient_id: str) -> ResponseReturnValue:
    return {"allergies": _services().timeline.allergy_summary(patient_id)}


@api.route("/patients/<patient_id>/problems/summary", methods=["GET"])
def problem_summary(patient_id: str) -> ResponseReturnValue:
    return {"problems": _services().timeline.problem_summary(patient_id)}


# --------------- terminology -----------------


def _terminology() -> OclClient:
    terminology = _services().terminology
    if terminology is None:
        raise ConfigurationError("no terminology server configured")
    return terminology


@api.route("/concepts/<org>/<source>/<concept>", methods=["GET"])
def get_concept(org: str, source: str, concept: str) -> ResponseReturnValue:
    return _terminology().get_concept(
        org,
        source,
        concept,
        include_mappings=bool(_bool_arg("includeMappings")),
        include_inverse_mappings=bool(_bool_arg("includeInverseMappings")),
    )


@api.route("/concepts/<org>/<source>", methods=["GET"])
def list_concepts(org: str, source: str) -> ResponseReturnValue:
    page = _terminology().list_concepts(
        org,
        source,
        verbose=bool(_bool_arg("verbose")),
        q=request.args.get("q"),
        sort_asc=request.args.get("sortAsc"),
        sort_desc=request.args.get("sortDesc"),
        concept_class=request.args.get("conceptClass"),
        data_type=request.args.get("dataType"),
        locale=request.args.get("locale"),
        include_retired=_bool_arg("includeRetired"),
        include_mappings=bool(_bool_arg("includeMappings")),
        include_inverse_mappings=bool(_bool_arg("includeInverseMappings")),
        page=request.args.get("page"),
        limit=_int_arg("limit"),
    )
    return {
        "items": page.items,
        "total": page.total,
        "next": page.next_cursor,
        "previous": page.previous_cursor,
        "hasMore": page.has_more,
    }


def create_app(services: Services | None = None) -> Flask:
    """
    Build the Flask application.

    :param services: Collaborators to serve. Built from the environment when not
        given.
    :raises ConfigurationError: If the environment does not describe a usable
        configuration.
    """
    if services is None:
        services = build_services(load_settings())

    app = Flask(__name__)
    app.extensions[EXTENSION_KEY] = services
    app.register_blueprint(api)
    app.register_error_handler(ClinicalGatewayError, handle_gateway_error)
    return app


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    app = create_app(build_services(settings))
    app.run(host=settings.flask_host, port=settings.flask_port)


if __name__ == "__main__":
    main()
