# nexus_records/schemas/engine_schema.py

import base64
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class NormalizedDocument(BaseModel):
    """
    Output of the input normalizer: either binary content (an image or a
    rendered PDF page, already downsized) or plain text.
    """
    data: Optional[bytes] = Field(None, description="Raw bytes for image/PDF payloads.")
    media_type: str = Field("text/plain", description="MIME type of `data`.")
    text: Optional[str] = Field(None, description="Plain text payload.")
    name: Optional[str] = Field(None, description="Original file name, if known.")

    @model_validator(mode="after")
    def _check_payload(self):
        if self.data is None and self.text is None:
            raise ValueError("A document needs either `data` or `text`.")
        return self

    @property
    def is_binary(self) -> bool:
        return self.data is not None

    @property
    def is_image(self) -> bool:
        return self.is_binary and self.media_type.startswith("image/")

    @property
    def size(self) -> int:
        return len(self.data) if self.data is not None else len((self.text or "").encode("utf-8"))


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    media_type: str
    data: bytes

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.base64_data}"


ContentPart = Union[TextPart, ImagePart]


class EngineMessage(BaseModel):
    """Role-tagged message whose content is an ordered list of parts."""
    role: Literal["system", "user", "assistant"]
    parts: List[ContentPart] = Field(default_factory=list)

    @classmethod
    def text(cls, role: str, text: str) -> "EngineMessage":
        return cls(role=role, parts=[TextPart(text=text)])

    @property
    def plain_text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))


ErrorType = Literal["transport", "malformed", "usage"]


class EngineResponse(BaseModel):
    """A unified response envelope for buffered engine calls."""
    success: bool
    text: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    status_code: Optional[int] = None
