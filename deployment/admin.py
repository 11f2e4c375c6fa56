"""
Deployment admin operations

Request handling for the admin endpoints, independent of the web framework:
each operation validates its payload and returns ``(status_code, body)``.
"""
from typing import Dict, List, Tuple, Any

from logger import get_logger
from deployment.exceptions import ErrorKind, NotFoundError, ValidationError
from deployment.models import MetricSample, TriggeredBy, WEB_VITALS
from deployment.rollback import MANUAL_EMERGENCY_TRIGGER

logger = get_logger(__name__)

Response = Tuple[int, Dict[str, Any]]

_STATUS_BY_KIND = {
    ErrorKind.INVALID_RANGE: 400,
    ErrorKind.MISSING_FIELD: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NO_PLAN_CONFIGURED: 404,
}


def require_fields(body: Dict[str, Any], fields: List[str]):
    """Raise ValidationError naming every missing field"""
    missing = [name for name in fields if body.get(name) is None or body.get(name) == ""]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            error_kind=ErrorKind.MISSING_FIELD,
            details={"missing": missing}
        )


def error_response(status_code: int, message: str) -> Response:
    return status_code, {"success": False, "error": message}


class DeploymentAdmin:
    """
    Admin operations over a DeploymentSafetySystem

    Example:
        admin = DeploymentAdmin(system)
        status, body = admin.update_feature_flag(
            {"flagId": "dual_audience_homepage", "percentage": 25, "updatedBy": "alice"}
        )
    """

    def __init__(self, system):
        self.system = system

    def update_feature_flag(self, body: Dict[str, Any]) -> Response:
        try:
            require_fields(body, ["flagId", "percentage", "updatedBy"])
        except ValidationError as e:
            return error_response(400, e.message)

        result = self.system.engine.update_rollout_percentage(
            body["flagId"],
            body["percentage"],
            body["updatedBy"],
            reason=body.get("reason")
        )
        if not result.success:
            return _STATUS_BY_KIND.get(result.error_kind, 400), result.to_dict()
        return 200, result.to_dict()

    def start_gradual_rollout(self, body: Dict[str, Any]) -> Response:
        try:
            require_fields(body, ["flagId", "updatedBy"])
        except ValidationError as e:
            return error_response(400, e.message)

        result = self.system.engine.start_gradual_rollout(body["flagId"], body["updatedBy"])
        if not result.success:
            return _STATUS_BY_KIND.get(result.error_kind, 400), result.to_dict()
        return 200, result.to_dict()

    async def trigger_rollback(self, body: Dict[str, Any]) -> Response:
        try:
            require_fields(body, ["reason", "triggeredBy"])
        except ValidationError as e:
            return error_response(400, e.message)

        trigger_id = body.get("triggerId") or MANUAL_EMERGENCY_TRIGGER
        try:
            event_id = await self.system.controller.trigger_rollback(
                trigger_id,
                TriggeredBy.MANUAL,
                reason=body["reason"],
                actor=body["triggeredBy"]
            )
        except NotFoundError as e:
            return error_response(404, e.message)

        logger.warning(f"Manual rollback {event_id} requested by {body['triggeredBy']}: {body['reason']}")
        return 200, {
            "success": True,
            "eventId": event_id,
            "message": f"Rollback triggered via {trigger_id}",
        }

    def monitoring(self) -> Response:
        return 200, self.system.dashboard_snapshot()

    def record_web_vitals(self, body: Dict[str, Any]) -> Response:
        vitals = {}
        for vital in WEB_VITALS:
            value = body.get(vital)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                return error_response(400, f"Invalid value for {vital}: {value!r}")
            vitals[vital] = float(value)

        if not vitals:
            return error_response(400, f"At least one of {', '.join(WEB_VITALS)} is required")

        self.system.aggregator.record_web_vitals(MetricSample(
            route=str(body.get("route") or "/"),
            method="GET",
            duration_ms=0.0,
            status_code=200,
            **vitals
        ))
        return 200, {"success": True, "recorded": sorted(vitals)}
