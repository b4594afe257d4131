"""Описание инструментов, ресурсов и промптов и реестр возможностей сервера."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from toolbox.core.errors import DuplicateRegistrationError
from toolbox.utils.uri_template import UriTemplate

# Исполняемые функции могут быть как обычными, так и async.
ToolExecutable = Callable[[Any, Any], Any]
ArgumentCompleter = Callable[[str], Any]
EntityCompleter = Callable[[str, str], Any]
ResourceLoader = Callable[[], Any]
TemplateLoader = Callable[[Dict[str, str]], Any]
PromptLoader = Callable[[Dict[str, Optional[str]]], Any]


class ToolSpec(BaseModel):
    """Инструмент MCP: схема параметров и исполняемая функция."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: Optional[str] = None
    parameters: Optional[Type[BaseModel]] = None
    execute: ToolExecutable

    def input_schema(self) -> Dict[str, Any]:
        if self.parameters is None:
            return {"type": "object"}
        return self.parameters.model_json_schema()

    def as_mcp_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "inputSchema": self.input_schema(),
        }
        if self.description is not None:
            payload["description"] = self.description
        return payload


class ResourceSpec(BaseModel):
    """Ресурс с фиксированным URI."""

    uri: str
    name: str
    description: Optional[str] = None
    mimeType: Optional[str] = None
    load: ResourceLoader
    complete: Optional[EntityCompleter] = None

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(include={"uri", "name", "description", "mimeType"}, exclude_none=True)


class ResourceTemplateArgument(BaseModel):
    name: str
    description: Optional[str] = None
    complete: Optional[ArgumentCompleter] = None


class ResourceTemplateSpec(BaseModel):
    """Параметризованный ресурс: URI-шаблон и загрузчик по переменным шаблона."""

    uriTemplate: str
    name: str
    description: Optional[str] = None
    mimeType: Optional[str] = None
    arguments: List[ResourceTemplateArgument] = Field(default_factory=list)
    load: TemplateLoader
    complete: Optional[EntityCompleter] = None

    @field_validator("uriTemplate")
    @classmethod
    def _check_template(cls, value: str) -> str:
        UriTemplate(value)
        return value

    def compiled(self) -> UriTemplate:
        return UriTemplate(self.uriTemplate)

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(include={"uriTemplate", "name", "description", "mimeType"}, exclude_none=True)


class PromptArgument(BaseModel):
    name: str
    description: Optional[str] = None
    required: bool = False
    enum: Optional[List[str]] = None
    complete: Optional[ArgumentCompleter] = None

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(include={"name", "description", "required"}, exclude_none=True)


class PromptSpec(BaseModel):
    """Промпт: именованные аргументы и загрузчик, возвращающий текст."""

    name: str
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)
    load: PromptLoader
    complete: Optional[EntityCompleter] = None

    def as_mcp_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "arguments": [argument.as_mcp_dict() for argument in self.arguments],
        }
        if self.description is not None:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class RegistrySnapshot:
    """Неизменяемый срез реестра, с которым работает одна сессия."""

    tools: Tuple[ToolSpec, ...] = ()
    resources: Tuple[ResourceSpec, ...] = ()
    resource_templates: Tuple[ResourceTemplateSpec, ...] = ()
    prompts: Tuple[PromptSpec, ...] = ()

    def find_tool(self, name: str) -> Optional[ToolSpec]:
        return next((tool for tool in self.tools if tool.name == name), None)

    def find_resource(self, uri: str) -> Optional[ResourceSpec]:
        return next((resource for resource in self.resources if resource.uri == uri), None)

    def find_resource_template(self, uri_template: str) -> Optional[ResourceTemplateSpec]:
        return next((tpl for tpl in self.resource_templates if tpl.uriTemplate == uri_template), None)

    def find_prompt(self, name: str) -> Optional[PromptSpec]:
        return next((prompt for prompt in self.prompts if prompt.name == name), None)


@dataclass
class CapabilityRegistry:
    """Накопитель регистраций до появления сессий. Повторные идентификаторы запрещены."""

    tools: List[ToolSpec] = field(default_factory=list)
    resources: List[ResourceSpec] = field(default_factory=list)
    resource_templates: List[ResourceTemplateSpec] = field(default_factory=list)
    prompts: List[PromptSpec] = field(default_factory=list)

    def add_tool(self, tool: ToolSpec) -> ToolSpec:
        if any(existing.name == tool.name for existing in self.tools):
            raise DuplicateRegistrationError("tool", tool.name)
        self.tools.append(tool)
        return tool

    def add_resource(self, resource: ResourceSpec) -> ResourceSpec:
        if any(existing.uri == resource.uri for existing in self.resources):
            raise DuplicateRegistrationError("resource", resource.uri)
        self.resources.append(resource)
        return resource

    def add_resource_template(self, template: ResourceTemplateSpec) -> ResourceTemplateSpec:
        if any(existing.uriTemplate == template.uriTemplate for existing in self.resource_templates):
            raise DuplicateRegistrationError("resource template", template.uriTemplate)
        self.resource_templates.append(template)
        return template

    def add_prompt(self, prompt: PromptSpec) -> PromptSpec:
        if any(existing.name == prompt.name for existing in self.prompts):
            raise DuplicateRegistrationError("prompt", prompt.name)
        self.prompts.append(prompt)
        return prompt

    def snapshot(self) -> RegistrySnapshot:
        return RegistrySnapshot(
            tools=tuple(self.tools),
            resources=tuple(self.resources),
            resource_templates=tuple(self.resource_templates),
            prompts=tuple(self.prompts),
        )


__all__ = [
    "ArgumentCompleter",
    "CapabilityRegistry",
    "EntityCompleter",
    "PromptArgument",
    "PromptSpec",
    "RegistrySnapshot",
    "ResourceSpec",
    "ResourceTemplateArgument",
    "ResourceTemplateSpec",
    "ToolExecutable",
    "ToolSpec",
]
