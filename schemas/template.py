from typing import Dict, List
from pydantic import BaseModel


class TemplateVariable(BaseModel):
    name: str
    label: str


class ParsedTemplate(BaseModel):
    html: str
    variables: List[TemplateVariable]


class FillTemplateRequest(BaseModel):
    html: str
    values: Dict[str, str] = {}


class FilledTemplate(BaseModel):
    html: str
    missing: List[str]
    complete: bool
