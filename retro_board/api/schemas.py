from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuthRequest(BaseModel):
    username: str
    password: str
    email: Optional[str] = None


class UsuarioOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: Optional[str]
    activo: bool
    creado_en: datetime


class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = None


class ProjectOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    created_by: Optional[int]
    created_at: datetime


class MemberCreate(BaseModel):
    usuario_id: int
    display_name: Optional[str] = None
    role: str = "Developer"


class MemberOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    usuario_id: int
    display_name: Optional[str]
    role: str


class SprintCreate(BaseModel):
    name: str
    goal: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: str = "Planned"


class SprintUpdate(BaseModel):
    name: Optional[str] = None
    goal: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[str] = None


class SprintOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    name: str
    goal: Optional[str]
    start_date: Optional[date]
    end_date: Optional[date]
    status: str
    retrospective_url: Optional[str]
    created_at: datetime
    updated_at: datetime


class RetrospectiveEntryOut(BaseModel):
    url: str
    created: bool


class RetrospectiveStatusOut(BaseModel):
    sprint_id: int
    url: Optional[str]
    join_control: str
    role: str


class ParticipantOut(BaseModel):
    id: str
    nickname: str
    isSelf: bool = False
    online: bool = True
    last_seen: str = ""


class PresenceOut(BaseModel):
    type: str = "presence"
    total: int
    participants: List[ParticipantOut] = Field(default_factory=list)


class BoardOut(BaseModel):
    token: str
    join_url: Optional[str]
    categories: List[Dict[str, Any]]
    scale: float
    versions: Dict[str, int] = Field(default_factory=dict)
    nicknames: Dict[str, str] = Field(default_factory=dict)
