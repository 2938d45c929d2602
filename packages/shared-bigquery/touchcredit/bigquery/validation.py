"""
QueryValidator - SQL statement guard for the attribution dataset.

Every table the engine owns is append-only, so the guard blocks:
- DELETE, UPDATE, MERGE, TRUNCATE (mutation of stored history)
- DROP, ALTER, GRANT, REVOKE (schema and access changes)
- INSERT and CREATE unless explicitly allowed for the write path
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class ValidationSeverity(str, Enum):
    """Severity level for validation issues."""

    ERROR = "error"  # Statement blocked
    WARNING = "warning"  # Statement allowed with warning


@dataclass
class ValidationResult:
    """Result of statement validation."""

    is_valid: bool
    severity: ValidationSeverity | None = None
    message: str | None = None


class QueryValidator:
    """
    Validates SQL statements before they reach BigQuery.

    Reads may only select. The write path may append rows and create
    missing tables, never rewrite or remove existing rows.
    """

    # Never allowed, on any path
    BLOCKED_PATTERNS = [
        (r"\bDROP\s+", "DROP statements are not allowed"),
        (r"\bDELETE\s+", "DELETE statements are not allowed"),
        (r"\bTRUNCATE\s+", "TRUNCATE statements are not allowed"),
        (r"\bUPDATE\s+", "UPDATE statements are not allowed"),
        (r"\bMERGE\s+", "MERGE statements are not allowed"),
        (r"\bALTER\s+", "ALTER statements are not allowed"),
        (r"\bGRANT\s+", "GRANT statements are not allowed"),
        (r"\bREVOKE\s+", "REVOKE statements are not allowed"),
    ]

    # Allowed only on the write path
    WRITE_PATTERNS = [
        (r"\bINSERT\s+", "INSERT statements are not allowed on the read path"),
        (r"\bCREATE\s+", "CREATE statements are not allowed on the read path"),
    ]

    WARNING_PATTERNS = [
        (r"SELECT\s+\*", "Consider specifying columns instead of SELECT *"),
    ]

    @classmethod
    def validate(cls, sql: str, allow_writes: bool = False) -> ValidationResult:
        """
        Validate a SQL statement.

        Args:
            sql: SQL statement string
            allow_writes: If True, allow INSERT and CREATE TABLE IF NOT EXISTS

        Returns:
            ValidationResult with status and message

        Raises:
            ValueError: If the statement contains blocked patterns
        """
        sql_upper = sql.upper()

        for pattern, message in cls.BLOCKED_PATTERNS:
            if re.search(pattern, sql_upper):
                raise ValueError(f"Query validation failed: {message}")

        if not allow_writes:
            for pattern, message in cls.WRITE_PATTERNS:
                if re.search(pattern, sql_upper):
                    raise ValueError(f"Query validation failed: {message}")
        elif re.search(r"\bCREATE\s+", sql_upper) and not re.search(
            r"\bCREATE\s+TABLE\s+IF\s+NOT\s+EXISTS\b", sql_upper
        ):
            raise ValueError(
                "Query validation failed: only CREATE TABLE IF NOT EXISTS is allowed"
            )

        warnings = [
            message
            for pattern, message in cls.WARNING_PATTERNS
            if re.search(pattern, sql_upper)
        ]
        if warnings:
            return ValidationResult(
                is_valid=True,
                severity=ValidationSeverity.WARNING,
                message="; ".join(warnings),
            )

        return ValidationResult(is_valid=True)

    @classmethod
    def sanitize_identifier(cls, identifier: str) -> str:
        """
        Sanitize a dataset or table identifier to prevent injection.

        Raises:
            ValueError: If identifier contains invalid characters
        """
        if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", identifier):
            raise ValueError(f"Invalid identifier: {identifier}")
        return identifier

    @classmethod
    def validate_project_dataset(cls, project_id: str, dataset: str) -> bool:
        """
        Validate project and dataset identifiers.

        Raises:
            ValueError: If identifiers are invalid
        """
        # Project ID: lowercase letters, digits, hyphens
        if not re.match(r"^[a-z][a-z0-9-]{5,29}$", project_id):
            raise ValueError(f"Invalid project ID: {project_id}")

        # Dataset: letters, digits, underscores
        if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]{0,1023}$", dataset):
            raise ValueError(f"Invalid dataset: {dataset}")

        return True
