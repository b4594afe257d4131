"""toolbox: MCP-сервер инструментов, ресурсов и промптов."""

from .core.errors import DuplicateRegistrationError, ErrorCode, McpError, UnexpectedStateError, UserError
from .core.server import SseOptions, ToolBox
from .core.session import SessionState, ToolContext, ToolboxSession
from .models.content import Completion, ContentResult, ImageContent, TextContent
from .tools.content import image_content
from .tools.registry import (
    PromptArgument,
    PromptSpec,
    ResourceSpec,
    ResourceTemplateArgument,
    ResourceTemplateSpec,
    ToolSpec,
)

__all__ = [
    "Completion",
    "ContentResult",
    "DuplicateRegistrationError",
    "ErrorCode",
    "ImageContent",
    "McpError",
    "PromptArgument",
    "PromptSpec",
    "ResourceSpec",
    "ResourceTemplateArgument",
    "ResourceTemplateSpec",
    "SessionState",
    "SseOptions",
    "TextContent",
    "ToolBox",
    "ToolContext",
    "ToolSpec",
    "ToolboxSession",
    "UnexpectedStateError",
    "UserError",
    "image_content",
]
