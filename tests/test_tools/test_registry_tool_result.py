from codeloop.tools.registry import ToolResult


def test_tool_result_populates_error_from_content_on_failure() -> None:
    result = ToolResult(success=False, content="command failed with exit code 1")

    assert result.error == "command failed with exit code 1"
    assert result.is_error is True


def test_tool_result_keeps_explicit_error_on_failure() -> None:
    result = ToolResult(success=False, content="stderr output", error="explicit error")

    assert result.error == "explicit error"
    assert result.text() == "explicit error"


def test_tool_result_text_is_content_on_success() -> None:
    result = ToolResult(content="ok")

    assert result.is_error is False
    assert result.text() == "ok"
