"""
Record schemas for the family-care store

Each persisted model maps to one array of the JSON document:
Account -> "users", ScheduleItem -> "schedules", HealthLog -> "healthLogs",
Message -> "messages", SentimentReport -> "reports".
Field names follow what the browser client sends and reads.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field

Role = Literal["elderly", "child", "parent"]


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# -----------------------------
# Persisted records
# -----------------------------

class Account(BaseModel):
    id: str
    phone: str = Field(..., description="Unique login key")
    name: str = Field(..., description="Display name")
    password: str
    role: Role
    boundPhones: List[str] = Field(default_factory=list, description="Phones of bound family members")
    avatarUrl: Optional[str] = None
    did_image_url: Optional[str] = Field(None, description="Avatar image used for the talking head")
    did_voice_id: Optional[str] = None
    voiceSampleUrl: Optional[str] = None


class AccountOut(BaseModel):
    id: str
    phone: str
    name: str
    role: Role
    boundPhones: List[str] = Field(default_factory=list)
    avatarUrl: Optional[str] = None
    did_image_url: Optional[str] = None
    did_voice_id: Optional[str] = None
    voiceSampleUrl: Optional[str] = None


class ScheduleItem(BaseModel):
    id: str
    userId: str = Field(..., description="Owner phone")
    title: str
    time: str = Field(..., description="Time of day, e.g. '08:30'")
    type: Literal["medication", "life"] = "life"
    status: Literal["pending", "completed"] = "pending"
    createdBy: str = Field(..., description="Creator phone")


class HealthLog(BaseModel):
    id: str
    userId: str = Field(..., description="Subject phone")
    type: Literal["blood_pressure", "heart_rate", "blood_sugar"]
    value: str
    timestamp: str


class Message(BaseModel):
    id: str
    fromUserId: str
    targetPhone: str
    content: str
    type: str = "text"
    status: Literal["pending", "delivered"] = "pending"
    timestamp: str


class EmotionScores(BaseModel):
    happiness: int = 0
    sadness: int = 0
    anger: int = 0
    fear: int = 0
    neutral: int = 0


class SentimentReport(BaseModel):
    id: str
    userId: str
    userName: str
    userRole: Role
    date: str
    overallMood: str
    trend: str
    summary: str
    details: EmotionScores
    suggestions: str
    interactionCount: int = Field(..., ge=0)


# -----------------------------
# Request bodies
# -----------------------------

class RegisterRequest(StrictModel):
    phone: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    role: Role


class LoginRequest(StrictModel):
    phone: str
    password: str


class ProfileUpdate(StrictModel):
    name: Optional[str] = Field(None, min_length=1)
    avatarUrl: Optional[str] = None


class PhoneBatchRequest(StrictModel):
    phones: List[str]


class BindRequest(StrictModel):
    userId: str
    targetPhone: str


class ScheduleCreate(StrictModel):
    userId: str
    title: str = Field(..., min_length=1)
    time: str = Field(..., min_length=1)
    type: Literal["medication", "life"] = "life"
    createdBy: str


class ScheduleUpdate(StrictModel):
    title: Optional[str] = Field(None, min_length=1)
    time: Optional[str] = Field(None, min_length=1)
    type: Optional[Literal["medication", "life"]] = None
    status: Optional[Literal["pending", "completed"]] = None


class HealthLogCreate(StrictModel):
    userId: str
    type: Literal["blood_pressure", "heart_rate", "blood_sugar"]
    value: str = Field(..., min_length=1)


class MessageCreate(StrictModel):
    fromUserId: str
    targetPhone: str
    content: str = Field(..., min_length=1)
    type: str = "text"


class MessageStatusUpdate(StrictModel):
    status: Literal["pending", "delivered"]
