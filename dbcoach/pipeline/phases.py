"""Default generation phases and their deterministic fallback content.

The default pipeline runs four phases in order:
Analysis -> Design -> Implementation -> Validation. When a phase fails and
fallback is enabled, the runner substitutes the text from
``fallback_content`` so downstream phases and replay always have content.
"""

from __future__ import annotations

from dbcoach.schemas.pipeline import PhaseDefinition
from dbcoach.schemas.streaming import ContentKind, SchemaFlavor

DEFAULT_PHASES: list[PhaseDefinition] = [
    PhaseDefinition(
        key="analysis",
        title="Requirements Analysis",
        agent="Requirements Analyst",
        template="analysis",
        content_kind=ContentKind.TEXT,
    ),
    PhaseDefinition(
        key="design",
        title="Schema Design",
        agent="Schema Designer",
        template="design",
        content_kind=ContentKind.SCHEMA,
    ),
    PhaseDefinition(
        key="implementation",
        title="Implementation Package",
        agent="Implementation Specialist",
        template="implementation",
        content_kind=ContentKind.CODE,
    ),
    PhaseDefinition(
        key="validation",
        title="Quality Validation",
        agent="Quality Validator",
        template="validation",
        content_kind=ContentKind.TEXT,
    ),
]


_ANALYSIS_FALLBACK = """\
{
  "domain": "general",
  "scale": "medium",
  "complexity": "moderate",
  "entities": ["users", "data", "records"],
  "relationships": ["one-to-many"],
  "requirements": ["data storage", "user management", "basic operations"]
}
"""

_DESIGN_FALLBACK = """\
-- {flavor} Database Schema for: {prompt}

CREATE TABLE users (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    email VARCHAR(255) UNIQUE NOT NULL,
    created_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE records (
    id SERIAL PRIMARY KEY,
    user_id INTEGER REFERENCES users(id),
    title VARCHAR(255) NOT NULL,
    data TEXT,
    created_at TIMESTAMP DEFAULT NOW()
);

CREATE INDEX idx_records_user_id ON records(user_id);
CREATE INDEX idx_users_email ON users(email);
"""

_IMPLEMENTATION_FALLBACK = """\
-- Implementation Package

-- Sample Data
INSERT INTO users (name, email) VALUES
('John Doe', 'john@example.com'),
('Jane Smith', 'jane@example.com');

INSERT INTO records (user_id, title, data) VALUES
(1, 'First Record', 'Sample data'),
(2, 'Second Record', 'More sample data');

-- Basic API Endpoints (REST)
-- GET /api/users - List all users
-- POST /api/users - Create new user
-- GET /api/records - List all records
-- POST /api/records - Create new record
"""

_VALIDATION_FALLBACK = """\
{
  "overall_score": 85,
  "issues": ["Consider adding more indexes for production use"],
  "approved": true,
  "recommendations": ["Add data validation", "Implement proper error handling", "Consider backup strategy"]
}
"""

_FALLBACKS: dict[str, str] = {
    "analysis": _ANALYSIS_FALLBACK,
    "design": _DESIGN_FALLBACK,
    "implementation": _IMPLEMENTATION_FALLBACK,
    "validation": _VALIDATION_FALLBACK,
}

_GENERIC_FALLBACK = "Fallback content not available for phase '{key}'.\n"


def fallback_content(key: str, prompt: str, flavor: SchemaFlavor | str) -> str:
    """Return the deterministic fallback text for a phase.

    Always non-empty. Unknown phase keys get a generic placeholder line.
    """
    template = _FALLBACKS.get(key)
    if template is None:
        return _GENERIC_FALLBACK.format(key=key)
    # JSON fallbacks contain literal braces, so substitute by name
    return template.replace("{flavor}", str(flavor)).replace("{prompt}", prompt.strip())
