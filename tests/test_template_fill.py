import io

import pytest
from docx import Document

from services.exceptions import InvalidRequest
from services.template_fill import (
    TemplateRenderer,
    docx_to_html,
    extract_variables,
    fill_template,
    missing_variables,
    output_file_name,
    variable_label,
)


def make_docx() -> bytes:
    document = Document()
    document.add_heading("הסכם שכר טרחה", level=1)
    paragraph = document.add_paragraph()
    # Word often breaks a placeholder over several runs.
    paragraph.add_run("שם הלקוח: {{")
    paragraph.add_run("שם_פרטי")
    paragraph.add_run("}} {{שם_משפחה}}")
    document.add_paragraph("סכום: {{ סכום }} ש\"ח")
    document.add_paragraph("ראשון", style="List Bullet")
    document.add_paragraph("שני", style="List Bullet")
    table = document.add_table(rows=1, cols=2)
    table.cell(0, 0).text = "תאריך"
    table.cell(0, 1).text = "{{תאריך}}"
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def test_docx_to_html_structure():
    html = docx_to_html(make_docx())

    assert "<h1>הסכם שכר טרחה</h1>" in html
    assert "<p>שם הלקוח: {{שם_פרטי}} {{שם_משפחה}}</p>" in html
    assert "<ul><li>ראשון</li><li>שני</li></ul>" in html
    assert "<td><p>{{תאריך}}</p></td>" in html


def test_docx_to_html_rejects_other_files():
    with pytest.raises(InvalidRequest):
        docx_to_html(b"plain text, not a zip")


def test_extract_variables_in_first_appearance_order():
    html = "<p>{{ b }} {{a}} {{b}} {{  c  }}</p>"
    assert extract_variables(html) == ["b", "a", "c"]


def test_extract_variables_from_document():
    assert extract_variables(docx_to_html(make_docx())) == ["שם_פרטי", "שם_משפחה", "סכום", "תאריך"]


def test_variable_label():
    assert variable_label("חברה") == "שם חברה"
    assert variable_label("שם_פרטי") == "שם פרטי"
    assert variable_label("מספר_תיק") == "מספר תיק"


def test_fill_replaces_placeholder():
    assert fill_template("<p>{{שם}}</p>", {"שם": "דוד"}) == "<p>דוד</p>"


def test_fill_replaces_every_occurrence():
    filled = fill_template("<p>{{שם}}</p><p>{{ שם }}</p>", {"שם": "דוד"})
    assert filled == "<p>דוד</p><p>דוד</p>"
    assert "{{" not in filled


def test_fill_tolerates_whitespace_inside_braces():
    assert fill_template("<p>{{  שם }}</p>", {"שם": "דוד"}) == "<p>דוד</p>"


def test_empty_value_leaves_placeholder_as_written():
    assert fill_template("<p>{{ שם }}</p>", {"שם": ""}) == "<p>{{ שם }}</p>"
    assert fill_template("<p>{{ שם }} {{עיר}}</p>", {"שם": "", "עיר": "חיפה"}) == "<p>{{ שם }} חיפה</p>"


def test_values_are_escaped():
    filled = fill_template("<p>{{x}}</p>", {"x": "<img src=x onerror=alert(1)>"})
    assert "<img" not in filled
    assert "&lt;img" in filled


def test_script_value_is_inert():
    filled = fill_template("<p>{{שם}}</p>", {"שם": "<script>alert(1)</script>"})
    assert "<script" not in filled
    assert "&lt;script&gt;" in filled


def test_template_markup_is_sanitized():
    filled = fill_template('<p onclick="steal()">{{x}}</p><script>alert(1)</script>', {"x": "ok"})
    assert "script" not in filled
    assert "onclick" not in filled
    assert "ok" in filled


def test_names_with_regex_characters_match_literally():
    html = "<p>{{a.b(c)}} {{aXb(c)}}</p>"
    assert fill_template(html, {"a.b(c)": "1"}) == "<p>1 {{aXb(c)}}</p>"


def test_missing_variables():
    assert missing_variables(["a", "b", "c"], {"a": "1", "b": "  "}) == ["b", "c"]


def test_output_file_name():
    assert output_file_name("חוזה.docx") == "חוזה.png"
    assert output_file_name("Agreement.DOC") == "Agreement.png"


async def test_render_refuses_missing_values():
    renderer = TemplateRenderer()
    with pytest.raises(InvalidRequest) as excinfo:
        await renderer.render(make_docx(), {"שם_פרטי": "דוד"}, "agreement.docx")
    assert "שם משפחה" in excinfo.value.message


async def test_parse_endpoint(client, auth_headers):
    response = await client.post(
        "/templates/parse",
        headers=auth_headers,
        files={"file": ("agreement.docx", make_docx(), "application/octet-stream")},
    )

    assert response.status_code == 200
    body = response.json()
    assert "<h1>" in body["html"]
    assert body["variables"][0] == {"name": "שם_פרטי", "label": "שם פרטי"}
    assert [v["name"] for v in body["variables"]] == ["שם_פרטי", "שם_משפחה", "סכום", "תאריך"]


async def test_parse_endpoint_rejects_other_uploads(client, auth_headers):
    response = await client.post(
        "/templates/parse", headers=auth_headers, files={"file": ("contract.pdf", b"%PDF-1.4", "application/pdf")}
    )
    assert response.status_code == 400

    response = await client.post("/templates/parse", files={"file": ("a.docx", make_docx(), "application/octet-stream")})
    assert response.status_code == 401


async def test_fill_endpoint_reports_missing(client, auth_headers):
    response = await client.post(
        "/templates/fill",
        headers=auth_headers,
        json={"html": "<p>{{שם}} {{עיר}}</p>", "values": {"שם": "דוד"}},
    )

    assert response.json() == {"html": "<p>דוד {{עיר}}</p>", "missing": ["עיר"], "complete": False}


async def test_render_endpoint_refuses_missing_values(client, auth_headers):
    response = await client.post(
        "/templates/render",
        headers=auth_headers,
        data={"values": '{"שם_פרטי": "דוד"}'},
        files={"file": ("agreement.docx", make_docx(), "application/octet-stream")},
    )

    assert response.status_code == 400
    assert "שם משפחה" in response.json()["detail"]
