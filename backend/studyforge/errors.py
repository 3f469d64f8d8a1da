# Domain error taxonomy; each error knows the HTTP status it maps to.
from typing import Any, Dict, Optional


class StudyForgeError(Exception):
    status_code = 500
    retryable = True

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message())
        self.message = str(self)

    @classmethod
    def default_message(cls) -> str:
        return "request failed"

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(StudyForgeError):
    status_code = 400


class InvalidMode(ValidationError):
    @classmethod
    def default_message(cls) -> str:
        return "Valid mode is required (topic or studyGuide)"


class MissingContent(ValidationError):
    pass


class InvalidCount(ValidationError):
    pass


class AuthenticationRequired(StudyForgeError):
    status_code = 401

    @classmethod
    def default_message(cls) -> str:
        return "User authentication required"


class QuotaExceeded(StudyForgeError):
    status_code = 429
    retryable = False

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "rateLimitExceeded": True}


class IPUnresolvable(StudyForgeError):
    status_code = 400
    retryable = False

    @classmethod
    def default_message(cls) -> str:
        return "IP unresolvable"


class UpstreamError(StudyForgeError):
    @classmethod
    def default_message(cls) -> str:
        return "Quiz generation failed"


class UpstreamParseError(StudyForgeError):
    @classmethod
    def default_message(cls) -> str:
        return "Failed to parse AI response"


class InvalidUpstreamFormat(StudyForgeError):
    @classmethod
    def default_message(cls) -> str:
        return "Invalid AI response format"


class PersistenceError(StudyForgeError):
    @classmethod
    def default_message(cls) -> str:
        return "Could not save to history"


class UnsupportedType(ValidationError):
    @classmethod
    def default_message(cls) -> str:
        return "Unsupported file type. Please upload .txt, .pdf, .docx or .html files."


class NoExtractableText(ValidationError):
    @classmethod
    def default_message(cls) -> str:
        return "No text could be extracted from the file."


class NotFound(StudyForgeError):
    status_code = 404


class SessionNotFound(NotFound):
    @classmethod
    def default_message(cls) -> str:
        return "quiz session not found"


class HistoryEntryNotFound(NotFound):
    @classmethod
    def default_message(cls) -> str:
        return "history entry not found"


class GenerationInProgress(StudyForgeError):
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "a quiz is already being generated"


class ActionRejected(StudyForgeError):
    status_code = 409
