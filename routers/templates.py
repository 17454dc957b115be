import json
import uuid
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile

from schemas.template import FilledTemplate, FillTemplateRequest, ParsedTemplate, TemplateVariable
from services.exceptions import InvalidRequest
from services.template_fill import (
    TemplateRenderer,
    extract_variables,
    fill_template,
    missing_variables,
    variable_label,
)
from utils.auth import get_current_user
from utils.dependencies import get_template_renderer

router = APIRouter()


def _check_docx(file: UploadFile):
    if not (file.filename or "").lower().endswith((".docx", ".doc")):
        raise InvalidRequest("Upload a Word (.docx) template")


@router.post("/parse", response_model=ParsedTemplate)
async def parse_template(
    file: UploadFile = File(...),
    user_id: uuid.UUID = Depends(get_current_user),
    renderer: TemplateRenderer = Depends(get_template_renderer),
):
    """Convert a Word template to HTML and list its {{placeholders}}."""
    _check_docx(file)
    html, variables = renderer.parse(await file.read())
    return ParsedTemplate(
        html=html, variables=[TemplateVariable(name=v, label=variable_label(v)) for v in variables]
    )


@router.post("/fill", response_model=FilledTemplate)
async def fill(data: FillTemplateRequest, user_id: uuid.UUID = Depends(get_current_user)):
    """Preview: substitute the values given so far."""
    missing = missing_variables(extract_variables(data.html), data.values)
    return FilledTemplate(html=fill_template(data.html, data.values), missing=missing, complete=not missing)


@router.post("/render")
async def render_template(
    file: UploadFile = File(...),
    values: Optional[str] = Form(None),
    user_id: uuid.UUID = Depends(get_current_user),
    renderer: TemplateRenderer = Depends(get_template_renderer),
):
    """Fill every placeholder and return the document as a PNG, ready to be sent for signing."""
    _check_docx(file)
    try:
        parsed_values = json.loads(values) if values else {}
    except ValueError:
        raise InvalidRequest("values must be a JSON object")
    if not isinstance(parsed_values, dict):
        raise InvalidRequest("values must be a JSON object")

    png, file_name = await renderer.render(
        await file.read(), {str(k): "" if v is None else str(v) for k, v in parsed_values.items()}, file.filename
    )
    return Response(
        content=png,
        media_type="image/png",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(file_name)}"},
    )
