"""
Alert persistence.

Drift alerts are upserted by (endpoint, fingerprint): the same mismatch seen
again refreshes the existing alert instead of creating a new one.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from apidrift.enums import SPEC_DIFF_ALERT_TYPES, AlertType, RiskScore
from apidrift.logger import get_logger
from apidrift.models import Alert, ApiEndpoint, ApiTrace, generate_fingerprint, utcnow
from apidrift.reconcile import AlertDescriptor

# Get logger
logger = get_logger("alerts")

ALERT_RISK_SCORES = {
    AlertType.NEW_ENDPOINT: RiskScore.LOW,
    AlertType.SPEC_DIFF_REQUEST: RiskScore.MEDIUM,
    AlertType.SPEC_DIFF_RESPONSE: RiskScore.MEDIUM,
    AlertType.PII_DATA_DETECTED: RiskScore.HIGH,
    AlertType.UNSECURED_ENDPOINT_DETECTED: RiskScore.HIGH
}


def _find_alert(session: Session, endpoint_uuid: str, fingerprint: str) -> Optional[Alert]:
    return (
        session.query(Alert)
        .filter(Alert.api_endpoint_uuid == endpoint_uuid, Alert.fingerprint == fingerprint)
        .first()
    )


def upsert_spec_diff_alerts(session: Session, descriptors: List[AlertDescriptor],
                            spec_name: Optional[str]) -> List[Alert]:
    """
    Persist drift descriptors, refreshing alerts that already exist.

    Args:
        session: Session of the enclosing transaction
        descriptors: Descriptors from the reconciliation engine
        spec_name: Spec the descriptors were computed against

    Returns:
        The created or refreshed alerts, in descriptor order
    """
    alerts = []
    created = 0
    for descriptor in descriptors:
        alert = _find_alert(session, descriptor.endpoint_uuid, descriptor.fingerprint)
        if alert is None:
            alert = Alert(
                type=descriptor.alert_type.value,
                risk_score=ALERT_RISK_SCORES[descriptor.alert_type].value,
                description=descriptor.description,
                context=descriptor.context(),
                fingerprint=descriptor.fingerprint,
                spec_name=spec_name,
                api_endpoint_uuid=descriptor.endpoint_uuid,
                api_trace_uuid=descriptor.trace_uuid
            )
            session.add(alert)
            created += 1
        else:
            alert.api_trace_uuid = descriptor.trace_uuid
            alert.context = descriptor.context()
            alert.updated_at = utcnow()
        alerts.append(alert)

    if created:
        logger.info(f"Created {created} spec diff alerts")
    session.flush()
    return alerts


def create_new_endpoint_alert(session: Session, endpoint: ApiEndpoint,
                              trace: Optional[ApiTrace] = None) -> Alert:
    """Raise the alert for an endpoint seen for the first time."""
    fingerprint = generate_fingerprint(endpoint.uuid, AlertType.NEW_ENDPOINT.value, endpoint.path)
    alert = _find_alert(session, endpoint.uuid, fingerprint)
    if alert is not None:
        return alert

    alert = Alert(
        type=AlertType.NEW_ENDPOINT.value,
        risk_score=ALERT_RISK_SCORES[AlertType.NEW_ENDPOINT].value,
        description=f"A new endpoint has been detected: {endpoint.method} {endpoint.host}{endpoint.path}",
        context={"path": endpoint.path, "method": endpoint.method, "host": endpoint.host},
        fingerprint=fingerprint,
        api_endpoint_uuid=endpoint.uuid,
        api_trace_uuid=trace.uuid if trace else None
    )
    session.add(alert)
    session.flush()
    logger.info(alert.description)
    return alert


def delete_spec_diff_alerts(session: Session, spec_name: str) -> int:
    """Delete every drift alert raised against a spec."""
    deleted = (
        session.query(Alert)
        .filter(
            Alert.spec_name == spec_name,
            Alert.type.in_([t.value for t in SPEC_DIFF_ALERT_TYPES])
        )
        .delete(synchronize_session=False)
    )
    logger.debug(f"Deleted {deleted} spec diff alerts for spec {spec_name}")
    return deleted


def list_alerts(session: Session, endpoint_uuid: Optional[str] = None,
                alert_type: Optional[AlertType] = None) -> List[Alert]:
    query = session.query(Alert)
    if endpoint_uuid:
        query = query.filter(Alert.api_endpoint_uuid == endpoint_uuid)
    if alert_type:
        query = query.filter(Alert.type == alert_type.value)
    return query.order_by(Alert.created_at, Alert.uuid).all()
