"""
Request middleware shared by every FHIR operation.
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Mapping
from typing import Any

from .auth import BasicCredential, BearerCredential
from .clients.pipeline import Descriptor, Handler, Middleware, set_attr, set_header
from .exceptions import AdapterMisconfiguredError, MissingLinkError

logger = logging.getLogger(__name__)

CREDENTIALS_MODES = ("same-origin", "include")

# Resource types that carry a patient/subject reference and accept `patient=`.
RESOURCE_TYPES_WITH_PATIENT = frozenset(
    {
        "Account",
        "AllergyIntolerance",
        "BodySite",
        "CarePlan",
        "Claim",
        "ClinicalImpression",
        "Communication",
        "CommunicationRequest",
        "Composition",
        "Condition",
        "Contract",
        "Coverage",
        "DetectedIssue",
        "Device",
        "DeviceRequest",
        "DeviceUseRequest",
        "DeviceUseStatement",
        "DiagnosticOrder",
        "DiagnosticReport",
        "DocumentManifest",
        "DocumentReference",
        "Encounter",
        "EnrollmentRequest",
        "EpisodeOfCare",
        "FamilyMemberHistory",
        "Flag",
        "Goal",
        "ImagingObjectSelection",
        "ImagingStudy",
        "Immunization",
        "ImmunizationRecommendation",
        "List",
        "Media",
        "MedicationAdministration",
        "MedicationDispense",
        "MedicationOrder",
        "MedicationRequest",
        "MedicationStatement",
        "NutritionOrder",
        "Observation",
        "Order",
        "Procedure",
        "ProcedureRequest",
        "QuestionnaireResponse",
        "ReferralRequest",
        "RelatedPerson",
        "RiskAssessment",
        "ServiceRequest",
        "Specimen",
        "SupplyDelivery",
        "SupplyRequest",
        "VisionPrescription",
    }
)


def trap_errors(handler: Handler) -> Handler:
    """
    Route any error raised further down the chain through the descriptor's
    `defer` collaborator.

    Without a `defer` the adapter is misconfigured and nothing can recover, so
    the error is logged and re-raised as `AdapterMisconfiguredError`.
    """

    async def run(req: Descriptor) -> Any:
        try:
            return await handler(req)
        except Exception as exc:
            if req.get("debug"):
                logger.debug("error in middleware: %s", exc, exc_info=exc)
            make_deferred = req.get("defer")
            if make_deferred is None:
                logger.error("error in middleware with no defer collaborator: %s", exc)
                raise AdapterMisconfiguredError(
                    "Adapter misconfigured: request descriptor has no 'defer' collaborator"
                ) from exc
            deferred = make_deferred()
            deferred.reject(exc)
            return await deferred.promise

    return run


errors = Middleware(trap_errors)


def _basic_header(req: Descriptor) -> str | None:
    auth = req.get("auth")
    if isinstance(auth, BasicCredential):
        raw = f"{auth.username}:{auth.password}".encode()
        return "Basic " + base64.b64encode(raw).decode("ascii")
    return None


def _bearer_header(req: Descriptor) -> str | None:
    auth = req.get("auth")
    if isinstance(auth, BearerCredential):
        return f"Bearer {auth.token}"
    return None


basic_auth = set_header("Authorization", _basic_header)
bearer_auth = set_header("Authorization", _bearer_header)


def _credentials_mode(req: Descriptor) -> str:
    mode = req.get("credentials")
    return mode if mode in CREDENTIALS_MODES else ""


# Pins an invalid placeholder unless a valid mode was supplied.
validate_credentials = set_attr("credentials", _credentials_mode)


def _json_payload(req: Descriptor) -> Any:
    for key in ("bundle", "data", "resource"):
        payload = req.get(key)
        if payload:
            if isinstance(payload, (Mapping, list)):
                return json.dumps(payload)
            return payload
    return None


json_data = set_attr("data", _json_payload)


def _patient_query(req: Descriptor) -> dict[str, Any] | None:
    patient = req.get("patient")
    if not patient:
        return None
    resource_type = req.get("type")
    if resource_type == "Patient":
        query = dict(req.get("query") or {})
        query["_id"] = patient
        return query
    if resource_type in RESOURCE_TYPES_WITH_PATIENT:
        query = dict(req.get("query") or {})
        query["patient"] = patient
        return query
    return None


with_patient = set_attr("query", _patient_query)


def bundle_link_url(relation: str) -> Middleware:
    """Take `url` from the `link` entry of `bundle` whose relation matches."""

    def _link(req: Descriptor) -> str:
        bundle = req.get("bundle") or {}
        for link in bundle.get("link") or []:
            if link.get("relation") == relation and link.get("url"):
                return str(link["url"])
        raise MissingLinkError(relation)

    return set_attr("url", _link)
