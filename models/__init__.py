from models.schemas import ErrorResponse, JobStatusResponse, TransformRequest, TransformResponse

__all__ = ["ErrorResponse", "JobStatusResponse", "TransformRequest", "TransformResponse"]
