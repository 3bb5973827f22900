"""Tests for test case step XML and inline image placeholders."""

import html

from workitem_bridge.migration.rich_content import (
    attachment_urls,
    build_test_steps_xml,
    insert_placeholders,
    placeholder_keys,
    relation_urls,
    replace_placeholders,
    step_text,
)
from workitem_bridge.models import SourceAttachment, SourceTestStep


class TestStepText:
    def test_html_reduced_to_lines(self):
        assert step_text("<div>Open <b>app</b></div><div>Log in</div>") == "Open app\nLog in"

    def test_entities_unescaped(self):
        assert step_text("a &lt; b") == "a < b"

    def test_empty(self):
        assert step_text(None) == ""


class TestBuildTestStepsXml:
    """Tests for the Microsoft.VSTS.TCM.Steps document."""

    def test_no_steps(self):
        assert build_test_steps_xml([]) == ""

    def test_steps_ordered_and_renumbered(self):
        xml = build_test_steps_xml(
            [
                SourceTestStep(5, "Submit", "Saved"),
                SourceTestStep(2, "Fill the form"),
            ]
        )

        assert xml.startswith('<steps id="0" last="2">')
        assert xml.endswith("</steps>")
        first = xml.index('<step id="1" type="ActionStep">')
        second = xml.index('<step id="2" type="ValidateStep">')
        assert first < second
        assert xml.index("Fill the form") < xml.index("Submit")

    def test_step_text_escaped_twice(self):
        xml = build_test_steps_xml([SourceTestStep(0, "Enter a < b", "Line 1<br/>Line 2")])

        body = html.escape("<DIV><P>Enter a &lt; b</P></DIV>")
        assert f'<parameterizedString isformatted="true">{body}</parameterizedString>' in xml
        assert html.escape("Line 1<BR/>Line 2") in xml
        assert "<description/></step>" in xml


class TestPlaceholders:
    """Tests for inline image placeholders."""

    def test_attachment_paths_replaced(self):
        value = (
            '<img src="/slm/attachment/5001/shot.png">'
            "<img alt='x' src='uploads/My%20Diagram.png'>"
        )

        result = insert_placeholders(value)

        assert result == (
            '<img src="__ATTACHMENT_5001__">'
            "<img alt='x' src='__ATTACHMENT_My%20Diagram.png__'>"
        )
        assert placeholder_keys(result) == ["5001", "My%20Diagram.png"]

    def test_external_and_inline_images_kept(self):
        value = '<img src="https://cdn.example.com/a.png"><img src="data:image/png;base64,AAA">'

        assert insert_placeholders(value) == value

    def test_already_replaced_kept(self):
        value = '<img src="__ATTACHMENT_5001__">'

        assert insert_placeholders(value) == value

    def test_replace_resolves_known_keys(self):
        value = '<img src="__ATTACHMENT_1__"><img src="__ATTACHMENT_2__">'

        result, replaced = replace_placeholders(value, {"1": "https://x.test/a?b=1&c=2"})

        assert replaced == 1
        assert result == '<img src="https://x.test/a?b=1&amp;c=2"><img src="__ATTACHMENT_2__">'


class TestAttachmentUrls:
    def test_uploaded_by_object_id_and_name(self):
        attachments = [
            SourceAttachment("1", "shot.png"),
            SourceAttachment("2", "My Diagram.png"),
        ]

        urls = attachment_urls(attachments, {"2": "https://x.test/2"})

        assert urls == {"2": "https://x.test/2", "My%20Diagram.png": "https://x.test/2"}

    def test_relations_matched_by_name(self):
        relations = [
            {"rel": "AttachedFile", "url": "https://x.test/a", "attributes": {"name": "shot.png"}},
            {"rel": "AttachedFile", "url": "https://x.test/b?fileName=log.txt"},
            {"rel": "System.LinkTypes.Hierarchy-Forward", "url": "https://x.test/wi/1"},
        ]

        urls = relation_urls(relations, [SourceAttachment("9", "shot.png")])

        assert urls == {
            "shot.png": "https://x.test/a",
            "log.txt": "https://x.test/b?fileName=log.txt",
            "9": "https://x.test/a",
        }
