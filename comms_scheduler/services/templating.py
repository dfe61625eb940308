"""
Message personalisation.

Templates use `{variableName}` placeholders. Known variables are filled from
the parent record and settings; any other `{identifier}` placeholder renders
as an empty string so a typo never reaches a parent verbatim.
"""
import re
from typing import Dict, Optional

from comms_scheduler.config import get_settings
from comms_scheduler.models.parent import Parent

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def build_variables(parent: Parent, program_name: Optional[str] = None) -> Dict[str, str]:
    return {
        "parentName": parent.name or "",
        "parentEmail": parent.email or "",
        "parentPhone": parent.phone or "",
        "programName": program_name if program_name is not None else get_settings().program_name,
    }


def render_template(template: Optional[str], variables: Dict[str, str]) -> str:
    if not template:
        return ""
    return _PLACEHOLDER.sub(lambda match: variables.get(match.group(1)) or "", template)
