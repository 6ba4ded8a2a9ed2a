"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
Qué DATOS acepta y devuelve la API. Las tablas están en models.py.

Pydantic valida tipos y rangos antes de llegar a los servicios. Lo que
Pydantic no puede saber (username repetido, no sois amigos...) lo
comprueban los servicios y sale como 400 con un mensaje para la UI.

Convención de nombres:
  XxxCreate → para crear algo nuevo (POST)
  XxxUpdate → para actualizar algo (PUT/PATCH)
  XxxResponse → lo que devuelve la API (GET)
"""

from pydantic import BaseModel, Field, EmailStr
from datetime import date, datetime
from typing import Optional

from models import HabitFrequency


# =============================================================================
# ===================== PERFILES ==============================================
# =============================================================================

class ProfileCreate(BaseModel):
    """Alta del perfil tras el primer login en el proveedor de auth"""
    email: EmailStr
    name: str = Field(min_length=1, max_length=100)
    timezone: Optional[str] = None

class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    username: Optional[str] = Field(default=None, min_length=3, max_length=50, pattern=r"^[a-zA-Z0-9_.]+$")
    avatar_url: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=300)
    is_public: Optional[bool] = None
    timezone: Optional[str] = None

class ProfileResponse(BaseModel):
    id: str
    email: str
    name: str
    username: Optional[str]
    avatar_url: Optional[str]
    bio: Optional[str]
    is_public: bool
    current_streak: int
    longest_streak: int
    last_activity_date: Optional[date]
    timezone: str
    created_at: datetime
    model_config = {"from_attributes": True}

class PublicProfileResponse(BaseModel):
    id: str
    name: str
    username: Optional[str]
    avatar_url: Optional[str]
    bio: Optional[str]
    current_streak: int
    longest_streak: int
    level: int
    total_points: int
    total_habits_completed: int
    member_since: datetime

class PushTokenUpdate(BaseModel):
    push_token: Optional[str] = None

class UsernameAvailability(BaseModel):
    username: str
    available: bool


# =============================================================================
# ===================== HÁBITOS ===============================================
# =============================================================================

class HabitCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    icon: str = "✅"
    frequency: HabitFrequency = HabitFrequency.daily
    points: Optional[int] = Field(default=None, gt=0)

class HabitUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = None
    frequency: Optional[HabitFrequency] = None

class HabitResponse(BaseModel):
    id: str
    name: str
    icon: str
    frequency: str
    points: int
    streak: int
    is_active: bool
    created_date: date
    created_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== COMPLETADOS ===========================================
# =============================================================================

class CompletionToggle(BaseModel):
    habit_id: str
    date: date
    completed: bool = True

class CompletionResponse(BaseModel):
    id: str
    habit_id: str
    completed_date: date
    completed: bool
    created_at: datetime
    model_config = {"from_attributes": True}

class DayStatus(BaseModel):
    date: date
    all_completed: bool


# =============================================================================
# ===================== GAMIFICACIÓN ==========================================
# =============================================================================

class LevelInfo(BaseModel):
    level: int
    xp: int
    xp_to_next_level: int
    xp_progress: float
    total_points: int
    total_habits_completed: int

class XPChange(BaseModel):
    points: int = Field(gt=0)

class XPResult(BaseModel):
    level_up: bool
    levels_gained: int
    new_level: int
    new_xp: int
    xp_to_next_level: int

class StreakResult(BaseModel):
    streak_broken: bool
    old_streak: int
    current_streak: int
    longest_streak: int

class StreakProfile(BaseModel):
    current_streak: int
    longest_streak: int
    last_activity_date: Optional[date]

class AchievementResponse(BaseModel):
    id: str
    achievement_type: str
    title: str
    description: str
    icon: str
    requirement: int
    unlocked_at: Optional[datetime]
    model_config = {"from_attributes": True}

class PartnershipProgress(BaseModel):
    status: str
    both_completed: bool
    user1_completed: bool
    user2_completed: bool
    already_counted: bool
    target_reached: bool
    current_streak: int

class CompletionOutcome(BaseModel):
    """
    Resultado de marcar/desmarcar un hábito. Los pasos posteriores al
    completado son independientes: si uno falla, su campo va a None y
    el fallo queda en `errors`.
    """
    habit_id: str
    date: date
    completed: bool
    habit_streak: Optional[int] = None
    xp: Optional[XPResult] = None
    streak: Optional[StreakResult] = None
    new_achievements: list[AchievementResponse] = []
    partnerships: dict[str, PartnershipProgress] = {}
    errors: list[str] = []


# =============================================================================
# ===================== AMIGOS ================================================
# =============================================================================

class FriendRequestCreate(BaseModel):
    addressee_id: str

class FriendshipResponse(BaseModel):
    id: str
    requester_id: str
    addressee_id: str
    status: str
    created_at: datetime
    model_config = {"from_attributes": True}

class FriendResponse(BaseModel):
    friendship_id: str
    friend_id: str
    name: str
    username: Optional[str]
    avatar_url: Optional[str]
    current_streak: int
    level: int
    status: str
    is_requester: bool

class UserSearchResult(BaseModel):
    id: str
    name: str
    username: Optional[str]
    avatar_url: Optional[str]
    current_streak: int
    level: int
    friendship_status: Optional[str]


# =============================================================================
# ===================== PARCERÍAS =============================================
# =============================================================================

class PartnershipCreate(BaseModel):
    friend_id: str
    # El rango 1-365 lo valida el servicio, con mensaje para la UI
    target_days: int = 7

class PartnershipReminderUpdate(BaseModel):
    enabled: bool

class PartnershipResponse(BaseModel):
    id: str
    user1_id: str
    user2_id: str
    status: str
    target_days: int
    current_streak: int
    start_date: Optional[date]
    end_date: Optional[date]
    last_activity_date: Optional[date]
    reminder_enabled: bool
    model_config = {"from_attributes": True}

class PartnershipView(BaseModel):
    """Parcería vista desde el usuario actual, con datos del socio"""
    id: str
    partner_id: str
    partner_name: str
    partner_username: Optional[str]
    partner_avatar_url: Optional[str]
    status: str
    target_days: int
    current_streak: int
    start_date: Optional[date]
    end_date: Optional[date]
    last_activity_date: Optional[date]
    reminder_enabled: bool
    is_user1: bool


# =============================================================================
# ===================== NOTIFICACIONES ========================================
# =============================================================================

class PushRequest(BaseModel):
    reminder_type: str
    user_ids: Optional[list[str]] = None

class PushResult(BaseModel):
    success: bool
    sent: int
    total: int
    reminder_type: str
    error: Optional[str] = None
