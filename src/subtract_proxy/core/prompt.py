import re
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..config import PromptTemplate

_VARIABLE = re.compile(r"\{\{([^}]+)\}\}")

BUILTIN_VARIABLES = ("content", "timestamp")
REQUEST_VARIABLES = ("url", "method", "contentType", "userAgent")


def replace_variables(text: str, variables: Dict[str, str]) -> str:
    """Substitutes ``{{name}}`` tokens; unknown names are left verbatim."""

    def _sub(match: re.Match) -> str:
        name = match.group(1).strip()
        value = variables.get(name)
        return match.group(0) if value is None else value

    return _VARIABLE.sub(_sub, text)


def extract_variable_references(text: str) -> List[str]:
    return [name.strip() for name in _VARIABLE.findall(text)]


def process_prompt_template(
    template: PromptTemplate,
    content: str,
    additional_vars: Optional[Dict[str, str]] = None,
) -> PromptTemplate:
    variables = {
        "content": content,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **template.variables,
        **(additional_vars or {}),
    }
    return PromptTemplate(
        system=replace_variables(template.system, variables),
        user=replace_variables(template.user, variables) if template.user else None,
        variables=template.variables,
    )


def validate_prompt_template(template: PromptTemplate) -> bool:
    if not template.system or not template.system.strip():
        return False

    known = set(BUILTIN_VARIABLES) | set(REQUEST_VARIABLES) | set(template.variables)
    references = extract_variable_references(template.system)
    if template.user:
        references += extract_variable_references(template.user)
    return all(ref in known for ref in references)
