"""
Mint Engine module.

Contains the pipeline stages (nonce, fees, metadata, submission), the
processor that runs orders on checked-out workers, and the retry and
funding feedback loop.
"""

from mintpool.engine.alerts import AlertSink, LoggingAlertSink, WebhookAlertSink, safe_notify
from mintpool.engine.fees import FeeEstimator
from mintpool.engine.funding import (
    AlertingFundingSink,
    BalanceMonitor,
    FundingRequest,
    FundingSink,
    WorkerFunder,
)
from mintpool.engine.metadata import MetadataPublisher, PinataPublisher, build_metadata
from mintpool.engine.nonce import NonceReconciler
from mintpool.engine.processor import MintProcessor
from mintpool.engine.retry import FailureHandler, FailureOutcome, RetryScheduler
from mintpool.engine.submission import SubmissionEngine

__all__ = [
    "AlertSink",
    "LoggingAlertSink",
    "WebhookAlertSink",
    "safe_notify",
    "FeeEstimator",
    "FundingRequest",
    "FundingSink",
    "AlertingFundingSink",
    "WorkerFunder",
    "BalanceMonitor",
    "MetadataPublisher",
    "PinataPublisher",
    "build_metadata",
    "NonceReconciler",
    "MintProcessor",
    "FailureHandler",
    "FailureOutcome",
    "RetryScheduler",
    "SubmissionEngine",
]
