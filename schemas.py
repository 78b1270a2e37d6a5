"""
Mongo document schemas. Each model name maps to a collection with the
lowercase class name (User -> "user", LocationPing -> "locationping").
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


TEACHER = "teacher"
STUDENT = "student"


class AuthedUser(BaseModel):
    userId: str
    name: Optional[str] = None
    role: str  # 'teacher' | 'student'


class User(BaseModel):
    userId: str = Field(..., description="Unique user id")
    name: Optional[str] = None
    email: Optional[str] = None
    role: str = Field(..., description="teacher|student")
    className: Optional[str] = Field(None, description="Cohort a student belongs to")
    rollNo: Optional[str] = None


class Session(BaseModel):
    sessionId: str
    teacherId: str
    teacherName: Optional[str] = None
    className: str = Field(..., description="Cohort whose roster is expected to attend")
    title: str
    duration: int = Field(60, description="Expected length in minutes, informational only")
    teacherLat: float
    teacherLon: float
    geofenceRadius: Optional[float] = Field(None, description="Explicit radius in meters, else per-operation defaults")
    status: str = Field("active", description="active|ended")
    passcode: Optional[str] = None
    passcodeUpdatedAt: Optional[datetime] = None
    createdAt: datetime
    endedAt: Optional[datetime] = None


class LocationPing(BaseModel):
    sessionId: str
    userId: str
    lat: float
    lon: float
    isValid: bool
    distanceMeters: Optional[float] = None
    serverTimestamp: datetime


class LocationSnapshot(BaseModel):
    lat: float
    lon: float
    accuracy: float = 0


class Attendance(BaseModel):
    attendanceId: str
    sessionId: str
    userId: str
    joinTime: Optional[datetime] = None
    submitTime: Optional[datetime] = None
    checkScore: int = 1
    status: str = Field("incomplete", description="incomplete|present|absent")
    method: str = Field("auto", description="auto|manual")
    locationSnapshot: Optional[LocationSnapshot] = None
