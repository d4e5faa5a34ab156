from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class KernelModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    last_activity: Optional[datetime] = None
    execution_state: Optional[str] = None
    connections: Optional[int] = None


class KernelSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    display_name: str = ""
    language: str = ""
    argv: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    interrupt_mode: str = "signal"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class KernelSpecModel(BaseModel):
    name: str
    spec: KernelSpec
    resources: Dict[str, str] = Field(default_factory=dict)


class KernelSpecs(BaseModel):
    default: str
    kernelspecs: Dict[str, KernelSpecModel]
