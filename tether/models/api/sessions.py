from typing import Optional

from pydantic import BaseModel, ConfigDict

from tether.models.api.kernels import KernelModel


class SessionModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    path: str
    name: str = ""
    type: str = "notebook"
    kernel: Optional[KernelModel] = None
