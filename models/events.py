from pydantic import BaseModel, Field


class ValidationEvent(BaseModel):
    """Emitted by the validation worker after each image reaches a terminal state.

    The CLI logs these. A future web UI can forward them over WebSocket.
    """

    batch_id: str
    image_id: str
    status: str       # terminal image status, e.g. "REJECTED"
    progress: float = Field(ge=0.0, le=1.0)
    message: str      # Human-readable status message
    payload: dict | None = None
