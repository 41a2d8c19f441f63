"""
Logging configuration for the StrandSign service.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

from .security import generate_request_id, sanitize_for_logging

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    One method per domain event: envelope lifecycle, anchoring outcomes,
    strand creation, co-sign and claim activity, security events.
    """

    def __init__(self, name: str = "strandsign.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, /, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = sanitize_for_logging(extra)
        self._logger.handle(record)

    def envelope_created(self, envelope_id: str, created_by: str, signer_count: int) -> None:
        self._log(
            logging.INFO,
            "ENVELOPE_CREATED",
            envelope_id=envelope_id,
            created_by=created_by,
            signer_count=signer_count,
            message=f"Envelope {envelope_id} created with {signer_count} signers"
        )

    def signature_recorded(self, envelope_id: str, signer_order: int, status: str) -> None:
        self._log(
            logging.INFO,
            "SIGNATURE_RECORDED",
            envelope_id=envelope_id,
            signer_order=signer_order,
            envelope_status=status,
            message=f"Signer {signer_order} signed envelope {envelope_id}"
        )

    def signature_rejected(self, envelope_id: Optional[str], reason: str) -> None:
        self._log(
            logging.WARNING,
            "SIGNATURE_REJECTED",
            envelope_id=envelope_id,
            reason=reason,
            message=f"Signature rejected: {reason}"
        )

    def envelope_completed(self, envelope_id: str, anchor_ref: str, anchor_state: str) -> None:
        self._log(
            logging.INFO,
            "ENVELOPE_COMPLETED",
            envelope_id=envelope_id,
            anchor_ref=anchor_ref,
            anchor_state=anchor_state,
            message=f"Envelope {envelope_id} completed"
        )

    def envelope_expired(self, envelope_id: str) -> None:
        self._log(
            logging.INFO,
            "ENVELOPE_EXPIRED",
            envelope_id=envelope_id,
            message=f"Envelope {envelope_id} expired"
        )

    def anchor_outcome(self, payload_type: str, subject: str, ref: str, state: str, error: Optional[str] = None) -> None:
        """Log the stored outcome of an anchor attempt."""
        level = logging.INFO if state == "confirmed" else logging.WARNING
        self._log(
            level,
            "ANCHOR_OUTCOME",
            payload_type=payload_type,
            subject=subject,
            anchor_ref=ref,
            anchor_state=state,
            error=error,
            message=f"{payload_type} anchor for {subject}: {state}"
        )

    def strand_created(self, identity_id: str, strand_key: str, strand_id: str) -> None:
        self._log(
            logging.INFO,
            "STRAND_CREATED",
            identity_id=identity_id,
            strand_key=strand_key,
            strand_id=strand_id,
            message=f"Strand {strand_key} added to identity {identity_id}"
        )

    def strength_recomputed(self, identity_id: str, score: int, level: int) -> None:
        self._log(
            logging.INFO,
            "STRENGTH_RECOMPUTED",
            identity_id=identity_id,
            score=score,
            level=level,
            message=f"Identity {identity_id} score {score}, level {level}"
        )

    def identity_created(self, identity_id: str, handle: str, root_ref: str) -> None:
        self._log(
            logging.INFO,
            "IDENTITY_CREATED",
            identity_id=identity_id,
            handle=handle,
            root_ref=root_ref,
            message=f"Identity created for {handle}"
        )

    def cosign_requested(self, request_id: str, sender: str, recipient: str) -> None:
        self._log(
            logging.INFO,
            "COSIGN_REQUESTED",
            cosign_request_id=request_id,
            sender=sender,
            recipient=recipient,
            message=f"Co-sign requested by {sender}"
        )

    def cosign_responded(self, request_id: str, attestor: str, strands: List[str]) -> None:
        self._log(
            logging.INFO,
            "COSIGN_RESPONDED",
            cosign_request_id=request_id,
            attestor=attestor,
            strands=strands,
            message=f"Co-sign request {request_id} signed by {attestor}"
        )

    def peer_attestation(self, request_id: str, requester: str, attestor: str, status: str) -> None:
        self._log(
            logging.INFO,
            "PEER_ATTESTATION",
            attestation_request_id=request_id,
            requester=requester,
            attestor=attestor,
            status=status,
            message=f"Peer attestation {request_id} {status}"
        )

    def claim_redeemed(self, invite_id: str, item_id: str, claimed_by: str) -> None:
        self._log(
            logging.INFO,
            "CLAIM_REDEEMED",
            invite_id=invite_id,
            item_id=item_id,
            claimed_by=claimed_by,
            message=f"Invite {invite_id} claimed by {claimed_by}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = generate_request_id()
    request_id_var.set(request_id)
    return request_id


# Global audit logger instance
audit_log = AuditLogger()
