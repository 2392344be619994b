"""Public interface for the ``statement_import`` package.

This module exposes the package's API functions and public models/types as the
stable import surface. There is no runtime logic here, only symbol re-exports.
"""

from .api import import_statement, load_categorizer, record_corrections
from .classifier import AdaptiveCategorizer, ClassifierState
from .generative import (
    GenerationCancelled,
    GenerationError,
    GenerationRequest,
    GenerationResponse,
    GenerationTimeout,
    OpenAITextGenerator,
    TextGenerator,
)
from .models import MerchantResolution, Prediction, Transaction, TransactionBlock
from .orchestrator import ImportResult, StatementImporter, StatementReadError, parse_document
from .persistence import JsonFileModelStore, ModelStore, SqlModelStore
from .session import SessionSummary, UploadSession

__all__ = [
    # API
    "import_statement",
    "load_categorizer",
    "parse_document",
    "record_corrections",
    "StatementImporter",
    "ImportResult",
    "StatementReadError",
    # Classifier
    "AdaptiveCategorizer",
    "ClassifierState",
    # Generative collaborator
    "TextGenerator",
    "OpenAITextGenerator",
    "GenerationRequest",
    "GenerationResponse",
    "GenerationError",
    "GenerationTimeout",
    "GenerationCancelled",
    # Storage
    "ModelStore",
    "JsonFileModelStore",
    "SqlModelStore",
    # Models / types
    "Transaction",
    "TransactionBlock",
    "MerchantResolution",
    "Prediction",
    "UploadSession",
    "SessionSummary",
]
