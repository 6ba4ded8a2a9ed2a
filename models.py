"""
=============================================================================
MODELS.PY — Todos los Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase aquí = una tabla en la base de datos.
Cada atributo de la clase = una columna en esa tabla.

RELACIONES:
  PROFILE
  ├── habits[] ──→ habit_completions[]
  ├── user_stats (1 fila por usuario)
  ├── achievements[] (catálogo sembrado por usuario)
  ├── friendships[] (como requester o addressee)
  └── streak_partnerships[] (como user1 o user2)

Todas las claves primarias son UUID en texto, igual que el backend
alojado del que vienen los datos.
"""

import enum
import uuid
from datetime import date, datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, Text, Date, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint, Index, text
)
from sqlalchemy.orm import relationship
from database import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


def ordered_pair(user_a: str, user_b: str) -> tuple[str, str]:
    """(menor, mayor): la misma clave para a→b y b→a"""
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


# =============================================================================
# ===================== ENUMS (Tipos predefinidos) ============================
# =============================================================================

class HabitFrequency(str, enum.Enum):
    """Con qué frecuencia se repite el hábito"""
    daily = "daily"
    weekly = "weekly"


class AchievementType(str, enum.Enum):
    """Qué métrica evalúa un logro"""
    streak = "streak"              # racha actual del perfil
    total_habits = "total_habits"  # hábitos completados en total
    level = "level"                # nivel de user_stats
    perfect_week = "perfect_week"  # reservado: sin regla de evaluación
    social = "social"              # número de amigos


class FriendshipStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    blocked = "blocked"


class PartnershipStatus(str, enum.Enum):
    """
    pending → active → completed
    pending/active → cancelled (terminal)
    """
    pending = "pending"
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


# Puntos por defecto según la frecuencia del hábito
DEFAULT_POINTS = {
    HabitFrequency.daily.value: 10,
    HabitFrequency.weekly.value: 30,
}


# =============================================================================
# ===================== TABLA 1: PROFILES =====================================
# =============================================================================
# El perfil lleva incrustado el StreakProfile (current/longest/last_activity)

class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=new_uuid)

    # ── Datos básicos ──
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    username = Column(String(50), unique=True, nullable=True, index=True)
    avatar_url = Column(String(500), nullable=True)
    bio = Column(Text, nullable=True)
    is_public = Column(Boolean, default=True)

    # ── Racha global (StreakProfile) ──
    current_streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    last_activity_date = Column(Date, nullable=True)
    # last_activity_date → último día contado en la racha (solo fecha)

    # ── Notificaciones ──
    push_token = Column(String(255), nullable=True)
    timezone = Column(String(50), default="America/Sao_Paulo")

    # ── Timestamps ──
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # ── Relaciones ──
    habits = relationship("Habit", back_populates="user", cascade="all, delete-orphan")
    stats = relationship("UserStats", back_populates="user", uselist=False, cascade="all, delete-orphan")
    achievements = relationship("Achievement", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 2: HABITS =======================================
# =============================================================================

class Habit(Base):
    __tablename__ = "habits"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    icon = Column(String(10), default="✅")
    frequency = Column(String(20), default=HabitFrequency.daily.value)

    points = Column(Integer, nullable=False, default=10)
    # points → fijo al crear, siempre positivo

    streak = Column(Integer, default=0, nullable=False)
    # streak → solo lo toca el flujo de racha/XP, nunca la UI

    is_active = Column(Boolean, default=True)
    # is_active → borrado suave: nunca se borra la fila

    created_date = Column(Date, nullable=False, default=date.today)
    # created_date → día LOCAL del usuario en que se creó (created_at es UTC)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("points > 0", name="ck_habit_points_positive"),
    )

    user = relationship("Profile", back_populates="habits")
    completions = relationship("HabitCompletion", back_populates="habit", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 3: HABIT_COMPLETIONS ============================
# =============================================================================
# Un hecho por hábito por día. Upsert: nunca se duplica ni se borra.

class HabitCompletion(Base):
    __tablename__ = "habit_completions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    habit_id = Column(String(36), ForeignKey("habits.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)

    completed_date = Column(Date, nullable=False)
    completed = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    # ── Restricción única: un registro por hábito por día ──
    __table_args__ = (
        UniqueConstraint("habit_id", "completed_date", name="uq_habit_completion_date"),
    )

    habit = relationship("Habit", back_populates="completions")


# =============================================================================
# ===================== TABLA 4: USER_STATS ===================================
# =============================================================================
# XP, nivel y contadores de por vida. Una fila por usuario.

class UserStats(Base):
    __tablename__ = "user_stats"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), unique=True, nullable=False)

    level = Column(Integer, default=1, nullable=False)
    xp = Column(Integer, default=0, nullable=False)
    # 0 <= xp < xp_to_next_level después de normalizar
    xp_to_next_level = Column(Integer, default=100, nullable=False)
    # +100 por cada nivel subido
    total_points = Column(Integer, default=0, nullable=False)
    total_habits_completed = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("Profile", back_populates="stats")


# =============================================================================
# ===================== TABLA 5: ACHIEVEMENTS =================================
# =============================================================================
# Definición + estado por usuario. unlocked_at se escribe UNA sola vez.

class Achievement(Base):
    __tablename__ = "achievements"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)

    achievement_type = Column(String(20), nullable=False)
    title = Column(String(100), nullable=False)
    description = Column(String(300), nullable=False)
    icon = Column(String(10), default="🏆")
    requirement = Column(Integer, nullable=False)

    unlocked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "achievement_type", "requirement", name="uq_user_achievement"),
    )

    user = relationship("Profile", back_populates="achievements")


# =============================================================================
# ===================== TABLA 6: FRIENDSHIPS ==================================
# =============================================================================
# Relación simétrica, pero guardamos quién la pidió.
# Rechazar o deshacer la amistad BORRA la fila.

class Friendship(Base):
    __tablename__ = "friendships"

    id = Column(String(36), primary_key=True, default=new_uuid)

    requester_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    addressee_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)

    # Pareja ordenada (el id menor primero): una sola fila por pareja,
    # pida quien pida
    user_low = Column(String(36), nullable=False)
    user_high = Column(String(36), nullable=False)

    status = Column(String(20), default=FriendshipStatus.pending.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_low", "user_high", name="uq_friendship_pair"),
    )

    requester = relationship("Profile", foreign_keys=[requester_id])
    addressee = relationship("Profile", foreign_keys=[addressee_id])


# =============================================================================
# ===================== TABLA 7: STREAK_PARTNERSHIPS ==========================
# =============================================================================
# Racha compartida entre dos amigos. user1 = quien invita, user2 = invitado.

class StreakPartnership(Base):
    __tablename__ = "streak_partnerships"

    id = Column(String(36), primary_key=True, default=new_uuid)

    user1_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    user2_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    user_low = Column(String(36), nullable=False)
    user_high = Column(String(36), nullable=False)

    status = Column(String(20), default=PartnershipStatus.pending.value, nullable=False)

    target_days = Column(Integer, default=7, nullable=False)
    current_streak = Column(Integer, default=0, nullable=False)

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    last_activity_date = Column(Date, nullable=True)
    # last_activity_date → último día ya contado (guarda contra el doble conteo)

    reminder_enabled = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("target_days >= 1 AND target_days <= 365", name="ck_partnership_target_days"),
        # Como mucho UNA parcería pendiente o activa por pareja
        Index(
            "uq_partnership_open_pair", "user_low", "user_high",
            unique=True,
            sqlite_where=text("status IN ('pending', 'active')"),
            postgresql_where=text("status IN ('pending', 'active')"),
        ),
    )

    user1 = relationship("Profile", foreign_keys=[user1_id])
    user2 = relationship("Profile", foreign_keys=[user2_id])
