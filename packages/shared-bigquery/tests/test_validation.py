"""Tests for statement validation."""

import pytest

from touchcredit.bigquery.validation import (
    QueryValidator,
    ValidationResult,
    ValidationSeverity,
)


class TestReadPath:
    """Test validation of read queries."""

    def test_select_is_valid(self):
        """Test a plain SELECT passes without warnings."""
        result = QueryValidator.validate(
            "SELECT conversion_id, revenue FROM conversions LIMIT 10"
        )
        assert isinstance(result, ValidationResult)
        assert result.is_valid is True
        assert result.severity is None
        assert result.message is None

    def test_select_star_warns(self):
        """Test SELECT * passes with a warning."""
        result = QueryValidator.validate("SELECT * FROM conversions")
        assert result.is_valid is True
        assert result.severity == ValidationSeverity.WARNING
        assert "SELECT *" in result.message

    @pytest.mark.parametrize(
        "sql, keyword",
        [
            ("DROP TABLE touchpoints", "DROP"),
            ("DELETE FROM attribution_results WHERE 1=1", "DELETE"),
            ("TRUNCATE TABLE spend", "TRUNCATE"),
            ("UPDATE conversions SET revenue = 0", "UPDATE"),
            ("MERGE INTO conversions USING staged ON TRUE", "MERGE"),
            ("ALTER TABLE conversions ADD COLUMN x STRING", "ALTER"),
            ("GRANT SELECT ON conversions TO analyst", "GRANT"),
            ("REVOKE SELECT ON conversions FROM analyst", "REVOKE"),
        ],
    )
    def test_blocked_statements(self, sql, keyword):
        """Test mutating and access statements are always blocked."""
        with pytest.raises(ValueError, match=f"{keyword} statements are not allowed"):
            QueryValidator.validate(sql)

    def test_blocked_case_insensitive(self):
        """Test blocking ignores keyword case."""
        with pytest.raises(ValueError):
            QueryValidator.validate("delete from conversions where true")

    def test_insert_blocked_on_read_path(self):
        """Test INSERT requires the write path."""
        with pytest.raises(ValueError, match="not allowed on the read path"):
            QueryValidator.validate("INSERT INTO conversions (conversion_id) VALUES ('x')")

    def test_create_blocked_on_read_path(self):
        """Test CREATE requires the write path."""
        with pytest.raises(ValueError, match="not allowed on the read path"):
            QueryValidator.validate("CREATE TABLE IF NOT EXISTS spend (day DATE)")


class TestWritePath:
    """Test validation with allow_writes."""

    def test_insert_allowed(self):
        """Test appends pass on the write path."""
        result = QueryValidator.validate(
            "INSERT INTO conversions (conversion_id) VALUES (@conversion_id)",
            allow_writes=True,
        )
        assert result.is_valid is True

    def test_create_if_not_exists_allowed(self):
        """Test idempotent table creation passes on the write path."""
        result = QueryValidator.validate(
            "CREATE TABLE IF NOT EXISTS `p.d.spend` (day DATE)", allow_writes=True
        )
        assert result.is_valid is True

    def test_plain_create_rejected(self):
        """Test CREATE without IF NOT EXISTS is rejected."""
        with pytest.raises(ValueError, match="only CREATE TABLE IF NOT EXISTS"):
            QueryValidator.validate("CREATE OR REPLACE TABLE spend (day DATE)", allow_writes=True)

    def test_delete_still_blocked(self):
        """Test the write path never allows removing rows."""
        with pytest.raises(ValueError, match="DELETE"):
            QueryValidator.validate("DELETE FROM spend WHERE true", allow_writes=True)


class TestIdentifiers:
    """Test identifier validation."""

    @pytest.mark.parametrize("identifier", ["touchpoints", "attribution_results", "_tmp", "t1"])
    def test_valid_identifiers(self, identifier):
        """Test valid identifiers are returned unchanged."""
        assert QueryValidator.sanitize_identifier(identifier) == identifier

    @pytest.mark.parametrize(
        "identifier", ["1table", "table-name", "table; DROP TABLE x", "", "a.b"]
    )
    def test_invalid_identifiers(self, identifier):
        """Test invalid identifiers raise ValueError."""
        with pytest.raises(ValueError, match="Invalid identifier"):
            QueryValidator.sanitize_identifier(identifier)

    def test_valid_project_dataset(self):
        """Test a well-formed project and dataset pair."""
        assert QueryValidator.validate_project_dataset("acme-analytics", "touchcredit") is True

    def test_invalid_project(self):
        """Test project ids must be lowercase and at least six characters."""
        with pytest.raises(ValueError, match="Invalid project ID"):
            QueryValidator.validate_project_dataset("Acme", "touchcredit")

    def test_invalid_dataset(self):
        """Test datasets cannot contain hyphens."""
        with pytest.raises(ValueError, match="Invalid dataset"):
            QueryValidator.validate_project_dataset("acme-analytics", "touch-credit")
