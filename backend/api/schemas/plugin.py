"""Plugin catalog schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List


class PluginResponse(BaseModel):
    """Plugin metadata and configuration schema."""

    type: str = Field(description="Automation type the plugin serves")
    name: str = Field(description="Display name")
    version: str = Field(description="Plugin version")
    description: str = Field(description="Plugin description")
    author: str = Field(description="Plugin author")
    icon: str = Field(description="Icon identifier")
    category: str = Field(description="Plugin category")
    required_secrets: List[str] = Field(description="Secret names the plugin needs")
    capabilities: List[str] = Field(description="Supported run controls (stop, pause)")
    config_schema: Dict[str, Any] = Field(description="Declared configuration schema")


class ConfigValidateRequest(BaseModel):
    """Candidate parameters to check against a plugin schema."""

    parameters: Dict[str, Any] = Field(default={}, description="Configuration values")


class ConfigValidateResponse(BaseModel):
    valid: bool
    errors: List[str]
    field_errors: Dict[str, List[str]]


class PluginHealthResponse(BaseModel):
    valid: bool
    errors: List[str]
    warnings: List[str]
