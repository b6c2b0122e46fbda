"""
Error taxonomy for the data access core.

Every fallible operation raises a subclass of ``LumenError``. The HTTP
collaborator maps ``status_code`` onto its response; the core itself never
looks at it.
"""
from typing import Optional
import enum


class ErrorKind(str, enum.Enum):
    """Error kinds surfaced by the core."""
    VALIDATION = "validation"
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    SESSION = "session"
    TRANSACTION = "transaction"
    QUERY = "query"
    SECURITY = "security"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class LumenError(Exception):
    """Base error carrying a kind, a machine code, a message and an optional cause."""

    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "internal_error"
    message: str = "internal error"
    status_code: int = 500

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        self.message = message or self.__class__.message
        self.cause = cause
        super().__init__(self.message)
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.code}: {self.message} ({self.cause})"
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }


# ============================================================================
# Kinds
# ============================================================================

class ValidationError(LumenError):
    kind = ErrorKind.VALIDATION
    code = "validation_error"
    message = "invalid input"
    status_code = 400


class DatabaseConnectionError(LumenError):
    kind = ErrorKind.CONNECTION
    code = "connection_failed"
    message = "failed to connect to database"
    status_code = 503


class AuthenticationError(LumenError):
    kind = ErrorKind.AUTHENTICATION
    code = "authentication_failed"
    message = "authentication failed"
    status_code = 401


class AuthorizationError(LumenError):
    kind = ErrorKind.AUTHORIZATION
    code = "unauthorized"
    message = "unauthorized access"
    status_code = 403


class SessionError(LumenError):
    kind = ErrorKind.SESSION
    code = "session_error"
    message = "session error"
    status_code = 401


class TransactionError(LumenError):
    kind = ErrorKind.TRANSACTION
    code = "transaction_error"
    message = "transaction error"
    status_code = 400


class QueryError(LumenError):
    kind = ErrorKind.QUERY
    code = "query_error"
    message = "query error"
    status_code = 400


class SecurityError(LumenError):
    kind = ErrorKind.SECURITY
    code = "security_error"
    message = "security violation"
    status_code = 400


class NotFoundError(LumenError):
    kind = ErrorKind.NOT_FOUND
    code = "not_found"
    message = "resource not found"
    status_code = 404


class ConflictError(LumenError):
    kind = ErrorKind.CONFLICT
    code = "conflict"
    message = "resource conflict"
    status_code = 409


class InternalError(LumenError):
    kind = ErrorKind.INTERNAL
    code = "internal_error"
    message = "internal error"
    status_code = 500


# ============================================================================
# Concrete errors
# ============================================================================

class InvalidConnectionString(ValidationError):
    code = "invalid_connection_string"
    message = "invalid connection string format"


class EmptyCredentials(ValidationError):
    code = "empty_credentials"
    message = "username and password are required"


class UnsupportedStatement(ValidationError):
    code = "unsupported_statement"
    message = "statement type is not allowed"


class NoAccessibleDB(DatabaseConnectionError):
    code = "no_accessible_database"
    message = "user has no accessible databases"
    status_code = 403


class OperationCancelled(DatabaseConnectionError):
    code = "operation_cancelled"
    message = "operation was cancelled"
    status_code = 499


class InvalidCredentials(AuthenticationError):
    code = "invalid_credentials"
    message = "invalid username or password"


class TableAccessDenied(AuthorizationError):
    code = "table_access_denied"
    message = "access denied to table"


class DatabaseAccessDenied(AuthorizationError):
    code = "database_access_denied"
    message = "role may not connect to this database"


class InsufficientPermissions(AuthorizationError):
    code = "insufficient_permissions"
    message = "insufficient permissions"


class InvalidSession(SessionError):
    code = "invalid_session"
    message = "invalid session"


class SessionExpired(SessionError):
    code = "session_expired"
    message = "session expired"


class SessionNotFound(SessionError):
    code = "session_not_found"
    message = "session not found"
    status_code = 404


class NoActiveTransaction(TransactionError):
    code = "no_active_transaction"
    message = "no active transaction"


class ActiveTransactionExists(TransactionError):
    code = "active_transaction_exists"
    message = "transaction already active"
    status_code = 409


class TransactionExpired(TransactionError):
    code = "transaction_expired"
    message = "transaction expired"
    status_code = 408


class CommitFailed(TransactionError):
    code = "commit_failed"
    message = "failed to commit transaction"
    status_code = 500


class QueryFailed(QueryError):
    code = "query_failed"
    message = "query execution failed"
    status_code = 500


class SqlInjectionDetected(SecurityError):
    code = "sql_injection_detected"
    message = "potential SQL injection detected"


class CryptoError(SecurityError):
    code = "crypto_tampering"
    message = "ciphertext or signature failed verification"


class DatabaseNotFound(NotFoundError):
    code = "database_not_found"
    message = "database not found"


class SchemaNotFound(NotFoundError):
    code = "schema_not_found"
    message = "schema not found"


class TableNotFound(NotFoundError):
    code = "table_not_found"
    message = "table not found"


class ColumnNotFound(NotFoundError):
    code = "column_not_found"
    message = "column not found"
