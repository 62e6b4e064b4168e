from typing import Any, Optional
from pydantic import BaseModel, Field

from services.payload_builder import MAX_SAFE_INTEGER
from services.upload_validation import UploadValidationError


class TransformRequest(BaseModel):
    """Raw POST /api/transform body. Field types are checked by `validated()` so errors keep their codes."""
    model_config = {"extra": "ignore", "populate_by_name": True}
    image_url: Any = Field(default=None, alias="imageUrl")
    style: Any = None
    seed: Any = None

    def validated(self) -> "TransformInput":
        image_url = self.image_url.strip() if isinstance(self.image_url, str) else ""
        style = self.style.strip() if isinstance(self.style, str) else ""
        if not image_url:
            raise UploadValidationError("INVALID_PAYLOAD", "`imageUrl` is required", 400)
        if not style:
            raise UploadValidationError("INVALID_PAYLOAD", "`style` is required", 400)

        seed = self.seed
        if seed is not None:
            if isinstance(seed, float) and seed.is_integer():
                seed = int(seed)
            if isinstance(seed, bool) or not isinstance(seed, int) or seed < 0 or seed > MAX_SAFE_INTEGER:
                raise UploadValidationError("INVALID_PAYLOAD", "`seed` must be a non-negative safe integer", 400)
        return TransformInput(image_url=image_url, style=style, seed=seed)


class TransformInput(BaseModel):
    image_url: str
    style: str
    seed: Optional[int] = None


class TransformResponse(BaseModel):
    model_config = {"populate_by_name": True}
    ok: bool = True
    order_id: str = Field(..., alias="orderId")
    runpod_id: str = Field(..., alias="runpodId")
    provider_job_id: str = Field(..., alias="providerJobId")
    seed: int
    status: str
    provider: str
    mode: str


class JobStatusResponse(BaseModel):
    model_config = {"populate_by_name": True}
    ok: bool = True
    runpod_id: str = Field(..., alias="runpodId")
    order_id: str = Field(..., alias="orderId")
    status: str
    output_image_url: Optional[str] = Field(None, alias="outputImageUrl")
    output_video_url: Optional[str] = Field(None, alias="outputVideoUrl")
    failure_reason: Optional[str] = Field(None, alias="failureReason")


class ErrorResponse(BaseModel):
    error: str
    code: Optional[str] = None
