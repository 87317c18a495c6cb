"""
Schema validation utilities for request payloads and generated content.

Provides JSON Schema validation with clear error messages, plus semantic
checks jsonschema cannot express (correct option present among options,
unique question and option ids).

Production features:
- Draft 7 validation with format checking
- Deep copy to prevent mutations of caller data
- Removal of unknown keys on request
- Transparent repair tracking
"""

from copy import deepcopy
from typing import Any, Optional

from jsonschema import Draft7Validator, FormatChecker
from jsonschema import ValidationError as SchemaError

try:
    from ..config import config
    from ..errors import ValidationError
except ImportError:
    from src.config import config
    from src.errors import ValidationError


_ID = {"type": "string", "minLength": 1, "maxLength": 128}

SUBMIT_QUIZ_SCHEMA = {
    "type": "object",
    "required": ["quizId", "answers"],
    "properties": {
        "quizId": _ID,
        "attemptId": _ID,
        "answers": {
            "type": "object",
            "additionalProperties": {"type": "string", "minLength": 1},
        },
        "timeSpentSeconds": {"type": "integer", "minimum": 0},
    },
    "additionalProperties": False,
}

UNLOCK_LEVEL_SCHEMA = {
    "type": "object",
    "required": ["levelId", "attemptId", "courseId"],
    "properties": {"levelId": _ID, "attemptId": _ID, "courseId": _ID},
    "additionalProperties": False,
}

SKIP_LEVEL_SCHEMA = {
    "type": "object",
    "required": ["levelId", "courseId"],
    "properties": {"levelId": _ID, "courseId": _ID},
    "additionalProperties": False,
}

EMBED_CHUNKS_SCHEMA = {
    "type": "object",
    "required": ["documentId"],
    "properties": {"documentId": _ID},
    "additionalProperties": False,
}

REGISTER_DOCUMENT_SCHEMA = {
    "type": "object",
    "required": ["filename", "fileType", "fileSize", "storagePath"],
    "properties": {
        "filename": {"type": "string", "minLength": 1, "maxLength": 512},
        "fileType": {"type": "string", "minLength": 1},
        "fileSize": {"type": "integer", "minimum": 1},
        "storagePath": {"type": "string", "minLength": 1, "maxLength": 1024},
        "courseId": _ID,
    },
    "additionalProperties": False,
}

NOTE_SCHEMA = {
    "type": "object",
    "required": ["courseId", "title", "content"],
    "properties": {
        "courseId": _ID,
        "chapterId": {"type": ["string", "null"]},
        "title": {"type": "string", "minLength": 1, "maxLength": 512},
        "content": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}

SEARCH_SCHEMA = {
    "type": "object",
    "required": ["query"],
    "properties": {
        "query": {"type": "string", "minLength": 1},
        "courseId": _ID,
        "documentIds": {"type": "array", "items": _ID},
        "threshold": {"type": "number", "exclusiveMinimum": 0, "maximum": 1},
        "limit": {"type": "integer", "minimum": 1, "maximum": 50},
    },
    "additionalProperties": False,
}

QUIZ_QUESTIONS_SCHEMA = {
    "type": "object",
    "required": ["questions"],
    "properties": {
        "questions": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["id", "type", "question", "options", "correctOptionId", "explanation"],
                "properties": {
                    "id": _ID,
                    "type": {"enum": ["multiple_choice", "true_false"]},
                    "question": {"type": "string", "minLength": 1},
                    "options": {
                        "type": "array",
                        "minItems": 2,
                        "maxItems": 4,
                        "items": {
                            "type": "object",
                            "required": ["id", "text"],
                            "properties": {
                                "id": _ID,
                                "text": {"type": "string", "minLength": 1},
                            },
                            "additionalProperties": False,
                        },
                    },
                    "correctOptionId": _ID,
                    "explanation": {"type": "string", "minLength": 1},
                    "wrongExplanations": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["optionId", "explanation"],
                            "properties": {
                                "optionId": _ID,
                                "explanation": {"type": "string"},
                            },
                            "additionalProperties": False,
                        },
                    },
                    "bloomLevel": {
                        "enum": ["remember", "understand", "apply", "analyze", "evaluate", "create"]
                    },
                    "difficulty": {"enum": ["easy", "medium", "hard"]},
                    "relatedConcept": {"type": "string"},
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}

REMEDIATION_SCHEMA = {
    "type": "object",
    "required": ["weakConcepts", "practiceHints", "suggestedReview"],
    "properties": {
        "weakConcepts": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["concept", "explanation"],
                "properties": {
                    "concept": {"type": "string", "minLength": 1},
                    "explanation": {"type": "string", "minLength": 1},
                    "example": {"type": "string"},
                },
                "additionalProperties": False,
            },
        },
        "practiceHints": {"type": "array", "items": {"type": "string"}},
        "suggestedReview": {"type": "array", "items": {"type": "string"}},
    },
    "additionalProperties": False,
}


class ValidationResult:
    """
    Result of a validation attempt.

    Attributes:
        valid: Whether data passed validation
        errors: List of error messages
        data: The validated data (may be modified if repair was attempted)
        repairs: List of repairs applied (for transparency)
    """

    def __init__(
        self,
        valid: bool,
        errors: list[str],
        data: Any = None,
        repairs: Optional[list[str]] = None,
    ):
        self.valid = valid
        self.errors = errors
        self.data = data
        self.repairs = repairs or []

    def __bool__(self) -> bool:
        """Allow using result in boolean context."""
        return self.valid

    def __str__(self) -> str:
        if self.valid:
            msg = "Validation passed"
            if self.repairs:
                msg += f" (with {len(self.repairs)} repair(s))"
            return msg
        return f"Validation failed with {len(self.errors)} error(s):\n" + "\n".join(
            f"  - {error}" for error in self.errors
        )


class SchemaValidator:
    """
    JSON Schema validator with optional removal of unknown keys.

    Usage:
        validator = SchemaValidator(SUBMIT_QUIZ_SCHEMA)
        result = validator.validate(payload)
        if not result:
            print(result.errors)
    """

    def __init__(self, schema: dict):
        self.schema = schema
        self.validator = Draft7Validator(self.schema, format_checker=FormatChecker())

    def validate(self, data: Any, auto_repair: bool = False) -> ValidationResult:
        """
        Validate data against schema.

        Args:
            data: Data to validate
            auto_repair: If True, drop keys the schema does not allow and
                re-validate

        Returns:
            ValidationResult with validation status and any errors
        """
        errors = [self._format_error(e) for e in self.validator.iter_errors(data)]

        if errors:
            if auto_repair:
                repaired = deepcopy(data)
                repairs: list[str] = []
                self._strip_additional_props(repaired, self.schema, repairs)
                result = self.validate(repaired, auto_repair=False)
                result.repairs = repairs
                return result
            return ValidationResult(valid=False, errors=errors, data=data)

        return ValidationResult(valid=True, errors=[], data=data)

    def _format_error(self, error: SchemaError) -> str:
        """
        Convert a jsonschema error to a human-readable message.

        Args:
            error: jsonschema ValidationError

        Returns:
            Formatted error message with the offending path
        """
        path = " -> ".join(str(p) for p in error.path) if error.path else "root"
        return f"At '{path}': {error.message}"

    def _strip_additional_props(
        self, obj: Any, schema: dict, repairs: list[str], path: str = "root"
    ):
        """
        Recursively remove keys not allowed by schema (additionalProperties: false).
        Handles both objects and arrays.
        """
        if not isinstance(schema, dict):
            return

        if isinstance(obj, dict) and "properties" in schema:
            allowed = set(schema.get("properties", {}).keys())
            if schema.get("additionalProperties") is False:
                extra_keys = [k for k in list(obj.keys()) if k not in allowed]
                for k in extra_keys:
                    obj.pop(k, None)
                    repairs.append(f"Removed unknown key '{k}' at {path}")

            for k, subschema in schema.get("properties", {}).items():
                if k in obj:
                    self._strip_additional_props(obj[k], subschema, repairs, f"{path}.{k}")

        if isinstance(obj, list) and "items" in schema:
            for i, item in enumerate(obj):
                self._strip_additional_props(item, schema["items"], repairs, f"{path}[{i}]")


def require_valid(schema: dict, data: Any) -> Any:
    """
    Validate ``data`` and return it, or raise errors.ValidationError.

    The first schema error becomes the user-facing message.
    """
    result = SchemaValidator(schema).validate(data)
    if not result:
        raise ValidationError(result.errors[0])
    return result.data


def check_quiz_questions(questions: list[dict]) -> list[str]:
    """
    Semantic checks on a schema-valid question list.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    seen_questions = set()
    min_options = config.assessment.min_options
    max_options = config.assessment.max_options

    for i, question in enumerate(questions):
        qid = question.get("id")
        if qid in seen_questions:
            errors.append(f"Question {i}: duplicate id '{qid}'")
        seen_questions.add(qid)

        option_ids = [opt.get("id") for opt in question.get("options", [])]
        if len(set(option_ids)) != len(option_ids):
            errors.append(f"Question {qid}: duplicate option ids")
        if not (min_options <= len(option_ids) <= max_options):
            errors.append(
                f"Question {qid}: expected {min_options}-{max_options} options, got {len(option_ids)}"
            )
        if question.get("type") == "true_false" and len(option_ids) != 2:
            errors.append(f"Question {qid}: true/false questions need exactly 2 options")

        if question.get("correctOptionId") not in option_ids:
            errors.append(f"Question {qid}: correct option is not among the options")

        for wrong in question.get("wrongExplanations", []) or []:
            if wrong.get("optionId") not in option_ids:
                errors.append(
                    f"Question {qid}: explanation for unknown option '{wrong.get('optionId')}'"
                )
            elif wrong.get("optionId") == question.get("correctOptionId"):
                errors.append(f"Question {qid}: wrong-answer explanation given for correct option")

    return errors


def validate_quiz_questions(data: dict) -> ValidationResult:
    """Schema plus semantic validation of a generated question set."""
    result = SchemaValidator(QUIZ_QUESTIONS_SCHEMA).validate(data, auto_repair=True)
    if not result:
        return result
    semantic = check_quiz_questions(result.data["questions"])
    if semantic:
        return ValidationResult(valid=False, errors=semantic, data=result.data, repairs=result.repairs)
    return result
