from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Any


class AssignmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)


class ChangeRequestCreate(BaseModel):
    sections: List[Any] = Field(default_factory=list)
    message: Optional[str] = None


class ChangeRequestReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    change_request_id: str = Field(alias="changeRequestId", min_length=1)
    action: str
    approved_sections: Optional[List[Any]] = Field(default=None, alias="approvedSections")
    admin_notes: Optional[str] = Field(default=None, alias="adminNotes")


class InvitationRequest(BaseModel):
    email: Optional[Any] = None


class ShareRequest(BaseModel):
    client_user_id: str = Field(min_length=1)
    can_download: Optional[bool] = None
    expires_at: Optional[str] = None

