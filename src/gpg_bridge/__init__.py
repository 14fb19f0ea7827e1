"""Drive the gpg command-line tool from Python.

This package runs gpg as a child process, speaks its machine-readable status
protocol, answers its prompts (including the interactive key edit menu) and
turns the results into typed records.
"""

from .config import (
    Capabilities,
    ConfigError,
    GPGConfig,
    detect_capabilities,
    ensure_gnupg_dir,
    find_gpg_executable,
    get_gnupghome,
    write_gpg_agent_conf,
)
from .edit import EditCommand, EditContext, EditSession, Transition
from .errors import (
    DecryptionFailedError,
    EncryptionFailedError,
    ErrorCategory,
    ErrorLogger,
    ExecutableError,
    ExportFailedError,
    GPGBridgeError,
    HashFailedError,
    ImportFailedError,
    KeyCreationFailedError,
    KeyEditFailedError,
    KeyListingFailedError,
    KeyServerError,
    OperationCancelledError,
    OperationFailedError,
    ProtocolViolationError,
    RandomDataError,
    RecoveryHint,
    RevocationFailedError,
    SigningFailedError,
    VerificationFailedError,
)
from .gpg_ops import GPGOperations
from .keylisting import EditKey, EditSubkey, EditUserId, KeyListingParser, parse_key_listing
from .options import (
    CertificationLevel,
    DecryptionOptions,
    EncryptionOptions,
    ExportOptions,
    ImportOptions,
    KeyDeletion,
    KeyServerOptions,
    KeySigningOptions,
    ListingSignatures,
    NewKeyOptions,
    OutputFormat,
    OutputOptions,
    Randomness,
    RevocationCode,
    RevocationReason,
    SigningOptions,
    UserPreferences,
    UserRevocationCode,
    VerificationOptions,
)
from .passwords import (
    ConsolePasswordCallbacks,
    PasswordBroker,
    PasswordCallbacks,
    StaticPasswordCallbacks,
)
from .process import ProcessSession, StreamHandling
from .types import (
    FailureReason,
    ImportedKey,
    KeyCapability,
    KeyServerKey,
    KeySignature,
    PrimaryKey,
    Result,
    SecureString,
    Signature,
    SignatureStatus,
    Subkey,
    TrustLevel,
    UserAttribute,
    UserId,
)

__version__ = "0.1.0"

__all__ = [
    # Operations
    "GPGOperations",
    "EditSession",
    "EditCommand",
    "EditContext",
    "Transition",
    "ProcessSession",
    "StreamHandling",
    # Configuration
    "GPGConfig",
    "Capabilities",
    "ConfigError",
    "detect_capabilities",
    "ensure_gnupg_dir",
    "find_gpg_executable",
    "get_gnupghome",
    "write_gpg_agent_conf",
    # Passwords
    "PasswordCallbacks",
    "PasswordBroker",
    "ConsolePasswordCallbacks",
    "StaticPasswordCallbacks",
    # Keys
    "PrimaryKey",
    "Subkey",
    "UserId",
    "UserAttribute",
    "KeySignature",
    "KeyServerKey",
    "ImportedKey",
    "EditKey",
    "EditUserId",
    "EditSubkey",
    "KeyListingParser",
    "parse_key_listing",
    # Data
    "Result",
    "SecureString",
    "Signature",
    "SignatureStatus",
    "FailureReason",
    "KeyCapability",
    "TrustLevel",
    # Options
    "OutputFormat",
    "OutputOptions",
    "EncryptionOptions",
    "SigningOptions",
    "VerificationOptions",
    "DecryptionOptions",
    "ExportOptions",
    "ImportOptions",
    "KeyDeletion",
    "ListingSignatures",
    "KeyServerOptions",
    "KeySigningOptions",
    "CertificationLevel",
    "NewKeyOptions",
    "Randomness",
    "RevocationCode",
    "UserRevocationCode",
    "RevocationReason",
    "UserPreferences",
    # Errors
    "GPGBridgeError",
    "ErrorCategory",
    "RecoveryHint",
    "ErrorLogger",
    "OperationFailedError",
    "EncryptionFailedError",
    "DecryptionFailedError",
    "SigningFailedError",
    "VerificationFailedError",
    "ImportFailedError",
    "ExportFailedError",
    "KeyCreationFailedError",
    "KeyEditFailedError",
    "KeyListingFailedError",
    "KeyServerError",
    "HashFailedError",
    "RandomDataError",
    "RevocationFailedError",
    "ProtocolViolationError",
    "OperationCancelledError",
    "ExecutableError",
    "__version__",
]
