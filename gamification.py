"""
=============================================================================
GAMIFICATION.PY — Sistema de Gamificación
=============================================================================
Gestiona:
  - XP y niveles          (StatsService)
  - Racha global diaria   (StreakService)
  - Logros                (AchievementService)

Las parcerías de racha entre dos amigos están en partnerships.py.

Cada servicio se puede llamar por separado. El orden correcto tras
"completé un hábito hoy" lo decide quien llama (main.py):
  1. guardar el completado      (ledger)
  2. add_xp
  3. StreakService.check        ← SIEMPRE después de guardar el completado
  4. AchievementService.check_and_unlock
  5. parcerías activas

Ningún paso asume acceso exclusivo a la fila: las escrituras son UPDATE
condicionales que se reintentan si otra petición llegó antes.
"""

import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clock import Clock
from errors import ConflictError, NotFoundError, StoreError, ValidationError
from ledger import CompletionService
from models import Achievement, AchievementType, Habit, Profile, UserStats
from store import commit, conditional_update

logger = logging.getLogger("habitos.gamification")

# Reintentos cuando un UPDATE condicional no afecta ninguna fila
MAX_RETRIES = 3


def _matches(column, value):
    """Condición de igualdad que también sirve para NULL"""
    return column.is_(None) if value is None else column == value


# =============================================================================
# ===================== SISTEMA DE NIVELES ====================================
# =============================================================================
# El coste de cada nivel crece de forma ADITIVA:
#   nivel 1 → 2 cuesta 100, nivel 2 → 3 cuesta 200, nivel 3 → 4 cuesta 300...
# xp es lo acumulado DENTRO del nivel actual: 0 <= xp < xp_to_next_level

BASE_XP_TO_NEXT_LEVEL = 100
XP_INCREMENT_PER_LEVEL = 100


def normalize_level(level: int, xp: int, xp_to_next_level: int) -> tuple[int, int, int, int]:
    """
    Aplica TODAS las subidas de nivel pendientes (bucle, no un solo paso).

    Retorna (level, xp, xp_to_next_level, niveles_subidos)

    Ejemplo: (1, 240, 100) → (2, 140, 200, 1)
    """
    levels_gained = 0
    while xp >= xp_to_next_level:
        xp -= xp_to_next_level
        level += 1
        xp_to_next_level += XP_INCREMENT_PER_LEVEL
        levels_gained += 1
    return level, xp, xp_to_next_level, levels_gained


def get_level_info(stats: UserStats) -> dict:
    """Información del nivel para la UI (barra de progreso)"""
    return {
        "level": stats.level,
        "xp": stats.xp,
        "xp_to_next_level": stats.xp_to_next_level,
        "xp_progress": round(stats.xp / stats.xp_to_next_level * 100, 1) if stats.xp_to_next_level else 100,
        "total_points": stats.total_points,
        "total_habits_completed": stats.total_habits_completed,
    }


# =============================================================================
# ===================== SISTEMA DE XP =========================================
# =============================================================================

class StatsService:

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    def get(self, user_id: str) -> Optional[UserStats]:
        try:
            return (
                self.db.query(UserStats)
                .filter(UserStats.user_id == user_id)
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo stats de {user_id}: {e}")
            return None

    def create_default(self, user_id: str) -> UserStats:
        """Fila inicial: nivel 1, 0 XP, 100 para subir, contadores a 0"""
        stats = UserStats(
            user_id=user_id,
            level=1,
            xp=0,
            xp_to_next_level=BASE_XP_TO_NEXT_LEVEL,
            total_points=0,
            total_habits_completed=0,
        )
        self.db.add(stats)
        commit(self.db, "crear stats")
        return stats

    def _require(self, user_id: str) -> UserStats:
        try:
            stats = (
                self.db.query(UserStats)
                .filter(UserStats.user_id == user_id)
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as e:
            raise StoreError("No se pudieron leer las stats") from e
        if stats is None:
            # No debería pasar después del registro
            logger.error(f"❌ El usuario {user_id} no tiene fila de stats")
            raise NotFoundError("Estadísticas del usuario no encontradas")
        return stats

    def _write(self, stats: UserStats, values: dict, action: str) -> bool:
        """UPDATE condicional: solo si la fila sigue como la leímos"""
        rows = conditional_update(
            self.db,
            UserStats,
            [
                UserStats.id == stats.id,
                UserStats.level == stats.level,
                UserStats.xp == stats.xp,
                UserStats.total_points == stats.total_points,
                UserStats.total_habits_completed == stats.total_habits_completed,
            ],
            {**values, "updated_at": self.clock.now()},
            action,
        )
        return rows == 1

    def add_xp(self, user_id: str, points: int) -> dict:
        """
        Suma puntos a xp y total_points, +1 a total_habits_completed, y
        aplica todas las subidas de nivel.

        Retorna:
          {
            "level_up": True,
            "levels_gained": 1,
            "new_level": 2,
            "new_xp": 140,
            "xp_to_next_level": 200
          }
        """
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError("Los puntos deben ser un entero positivo")

        for _ in range(MAX_RETRIES):
            stats = self._require(user_id)
            level, xp, xp_to_next, gained = normalize_level(
                stats.level, stats.xp + points, stats.xp_to_next_level
            )
            written = self._write(stats, {
                "level": level,
                "xp": xp,
                "xp_to_next_level": xp_to_next,
                "total_points": stats.total_points + points,
                "total_habits_completed": stats.total_habits_completed + 1,
            }, "sumar XP")
            if written:
                break
            logger.warning(f"⚠️ Conflicto sumando XP a {user_id}, reintentando")
        else:
            raise ConflictError("Las estadísticas cambiaron mientras se sumaba XP")

        logger.info(f"✨ +{points} XP para {user_id} → nivel {level}, {xp}/{xp_to_next}")
        if gained:
            logger.info(f"🎉 {user_id} subió al nivel {level}")

        return {
            "level_up": gained > 0,
            "levels_gained": gained,
            "new_level": level,
            "new_xp": xp,
            "xp_to_next_level": xp_to_next,
        }

    def remove_xp(self, user_id: str, points: int) -> bool:
        """
        Deshace un completado: resta puntos y un hábito, sin bajar de 0.
        El nivel NUNCA baja (deshacer no quita niveles ya ganados).
        """
        if isinstance(points, bool) or not isinstance(points, int) or points < 0:
            raise ValidationError("Los puntos deben ser un entero no negativo")

        for _ in range(MAX_RETRIES):
            stats = self._require(user_id)
            written = self._write(stats, {
                "xp": max(0, stats.xp - points),
                "total_points": max(0, stats.total_points - points),
                "total_habits_completed": max(0, stats.total_habits_completed - 1),
            }, "restar XP")
            if written:
                logger.info(f"↩️ -{points} XP para {user_id}")
                return True
            logger.warning(f"⚠️ Conflicto restando XP a {user_id}, reintentando")

        raise ConflictError("Las estadísticas cambiaron mientras se restaba XP")


# =============================================================================
# ===================== SISTEMA DE RACHAS =====================================
# =============================================================================
# Racha global = días seguidos completando TODOS los hábitos activos.
# Un día sin hábitos activos NO cuenta para la racha.

STREAK_REQUIRES_HABITS = True


class StreakService:

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()
        self.completions = CompletionService(db, self.clock)

    def get_profile(self, user_id: str) -> Optional[dict]:
        try:
            profile = self.db.get(Profile, user_id, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo racha de {user_id}: {e}")
            return None
        if profile is None:
            return None
        return {
            "current_streak": profile.current_streak,
            "longest_streak": profile.longest_streak,
            "last_activity_date": profile.last_activity_date,
        }

    def _day_satisfied(self, user_id: str, day: date) -> bool:
        return self.completions.all_habits_completed_on_date(
            user_id, day, require_habits=STREAK_REQUIRES_HABITS
        )

    def check(self, user_id: str) -> dict:
        """
        Recalcula la racha del usuario para HOY. Idempotente dentro del día.

        Lógica:
          - Si el último día contado es anterior a ayer, se revisan los
            días intermedios en el registro: cada día cumplido extiende la
            racha. Si queda un hueco → racha rota (a 0).
          - Si hoy está cumplido: ayer contado → +1, hoy ya contado → igual,
            si no → empieza en 1.
          - Si hoy estaba contado pero se desmarcó un hábito → se devuelve
            el día (racha -1). longest_streak nunca baja.

        Retorna:
          {
            "streak_broken": False,
            "old_streak": 3,
            "current_streak": 4,
            "longest_streak": 10
          }
        """
        for _ in range(MAX_RETRIES):
            try:
                profile = self.db.get(Profile, user_id, populate_existing=True)
            except SQLAlchemyError as e:
                logger.error(f"Error leyendo perfil {user_id}: {e}")
                raise StoreError("No se pudo leer la racha") from e
            if profile is None:
                raise NotFoundError("Perfil no encontrado")

            before = profile.current_streak
            result, values = self._evaluate(profile)
            if values is None:
                break

            rows = conditional_update(
                self.db,
                Profile,
                [
                    Profile.id == user_id,
                    Profile.current_streak == profile.current_streak,
                    _matches(Profile.last_activity_date, profile.last_activity_date),
                ],
                values,
                "actualizar racha",
            )
            if rows == 1:
                break
            logger.warning(f"⚠️ Conflicto en la racha de {user_id}, reintentando")
        else:
            raise ConflictError("La racha cambió mientras se recalculaba")

        if result["streak_broken"]:
            logger.info(f"💔 Racha rota: {user_id} ({result['old_streak']} días)")
        elif result["current_streak"] != before:
            logger.info(f"🔥 Racha de {user_id}: {before} → {result['current_streak']}")

        return result

    def _evaluate(self, profile: Profile) -> tuple[dict, Optional[dict]]:
        """Calcula el nuevo estado. values=None → no hay nada que guardar."""
        today = self.clock.for_timezone(profile.timezone).today()
        yesterday = today - timedelta(days=1)

        current = profile.current_streak
        longest = profile.longest_streak
        last = profile.last_activity_date
        old_streak = current
        streak_broken = False

        # ── Recuperar días intermedios cumplidos ──
        if last is not None and current > 0 and last < yesterday:
            day = last + timedelta(days=1)
            while day <= yesterday and self._day_satisfied(profile.id, day):
                current += 1
                last = day
                day += timedelta(days=1)

        # ── ¿Se rompió? ──
        if last is not None and last < yesterday and current > 0:
            old_streak = current
            current = 0
            streak_broken = True

        # ── ¿Hoy cuenta? ──
        if self._day_satisfied(profile.id, today):
            if last != today:
                current = current + 1 if (last == yesterday and current > 0) else 1
                last = today
        elif last == today:
            # Se desmarcó algo hoy después de contar el día
            current = max(0, current - 1)
            last = yesterday

        longest = max(longest, current)

        result = {
            "streak_broken": streak_broken,
            "old_streak": old_streak,
            "current_streak": current,
            "longest_streak": longest,
        }

        unchanged = (
            current == profile.current_streak
            and longest == profile.longest_streak
            and last == profile.last_activity_date
        )
        if unchanged:
            return result, None

        return result, {
            "current_streak": current,
            "longest_streak": longest,
            "last_activity_date": last,
            "updated_at": self.clock.now(),
        }


# =============================================================================
# ===================== SISTEMA DE LOGROS =====================================
# =============================================================================

# Catálogo fijo. Se siembra una copia por usuario al crear la cuenta.
ACHIEVEMENT_CATALOG = [
    # ── Hábitos completados ──
    {"type": "total_habits", "requirement": 1, "title": "El primer paso", "description": "Completa tu primer hábito", "icon": "👣"},
    {"type": "total_habits", "requirement": 10, "title": "Calentando motores", "description": "Completa 10 hábitos", "icon": "🚀"},
    {"type": "total_habits", "requirement": 50, "title": "Medio centenar", "description": "Completa 50 hábitos", "icon": "✨"},
    {"type": "total_habits", "requirement": 100, "title": "Centenar", "description": "Completa 100 hábitos", "icon": "💯"},
    {"type": "total_habits", "requirement": 500, "title": "Máquina de hábitos", "description": "Completa 500 hábitos", "icon": "⚙️"},

    # ── Rachas ──
    {"type": "streak", "requirement": 3, "title": "Tres días seguidos", "description": "Completa todos tus hábitos 3 días seguidos", "icon": "🌱"},
    {"type": "streak", "requirement": 7, "title": "Semana de fuego", "description": "7 días seguidos sin fallar", "icon": "🔥"},
    {"type": "streak", "requirement": 30, "title": "Mes de acero", "description": "30 días seguidos", "icon": "🛡️"},
    {"type": "streak", "requirement": 100, "title": "Centenario", "description": "100 días seguidos", "icon": "💎"},
    {"type": "streak", "requirement": 365, "title": "Un año completo", "description": "365 días seguidos", "icon": "👑"},

    # ── Niveles ──
    {"type": "level", "requirement": 5, "title": "Constante", "description": "Alcanza el nivel 5", "icon": "🌟"},
    {"type": "level", "requirement": 10, "title": "Veterano", "description": "Alcanza el nivel 10", "icon": "⭐"},
    {"type": "level", "requirement": 20, "title": "Maestro", "description": "Alcanza el nivel 20", "icon": "🌠"},

    # ── Social ──
    {"type": "social", "requirement": 1, "title": "Primer amigo", "description": "Haz tu primer amigo", "icon": "🤝"},
    {"type": "social", "requirement": 5, "title": "En buena compañía", "description": "Ten 5 amigos", "icon": "👥"},

    # ── Semana perfecta (sin regla de evaluación todavía) ──
    {"type": "perfect_week", "requirement": 1, "title": "Semana perfecta", "description": "Completa todos tus hábitos una semana entera", "icon": "🏅"},
]


class AchievementService:

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    def seed_for_user(self, user_id: str) -> int:
        """
        Inserta el catálogo para un usuario (solo lo que le falte).
        Retorna cuántos logros se crearon.
        """
        existing = {
            (a.achievement_type, a.requirement)
            for a in self.db.query(Achievement).filter(Achievement.user_id == user_id).all()
        }
        created = 0
        for ach_def in ACHIEVEMENT_CATALOG:
            if (ach_def["type"], ach_def["requirement"]) in existing:
                continue
            self.db.add(Achievement(
                user_id=user_id,
                achievement_type=ach_def["type"],
                title=ach_def["title"],
                description=ach_def["description"],
                icon=ach_def["icon"],
                requirement=ach_def["requirement"],
                created_at=self.clock.now(),
            ))
            created += 1
        commit(self.db, "sembrar logros")
        if created:
            logger.info(f"✅ {created} logros sembrados para {user_id}")
        return created

    def get_all(self, user_id: str) -> list[Achievement]:
        """Logros del usuario en orden de catálogo (requirement ascendente)"""
        try:
            return (
                self.db.query(Achievement)
                .filter(Achievement.user_id == user_id)
                .order_by(Achievement.requirement, Achievement.achievement_type)
                .populate_existing()
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo logros de {user_id}: {e}")
            return []

    def unlock(self, achievement_id: str) -> bool:
        """
        Pone unlocked_at SOLO si seguía a NULL.
        True → esta llamada lo desbloqueó. False → ya lo estaba (o falló).
        """
        try:
            rows = conditional_update(
                self.db,
                Achievement,
                [Achievement.id == achievement_id, Achievement.unlocked_at.is_(None)],
                {"unlocked_at": self.clock.now()},
                "desbloquear logro",
            )
        except StoreError:
            return False
        return rows == 1

    def _condition_met(self, achievement: Achievement, stats: UserStats,
                       current_streak: int, friend_count: int) -> bool:
        kind = achievement.achievement_type
        if kind == AchievementType.total_habits.value:
            return stats.total_habits_completed >= achievement.requirement
        if kind == AchievementType.streak.value:
            return current_streak >= achievement.requirement
        if kind == AchievementType.level.value:
            return stats.level >= achievement.requirement
        if kind == AchievementType.social.value:
            return friend_count >= achievement.requirement
        # perfect_week: sin regla definida, nunca se desbloquea solo
        return False

    def check_and_unlock(self, user_id: str, stats: UserStats,
                         habits: Optional[list[Habit]] = None,
                         friend_count: int = 0) -> list[Achievement]:
        """
        Evalúa los logros bloqueados contra las stats/racha/amigos actuales
        y desbloquea los que ya se cumplen.

        Retorna los recién desbloqueados, en orden de catálogo.
        Volver a llamar con lo mismo no desbloquea nada nuevo, y un logro
        desbloqueado no se toca aunque la métrica baje después.
        """
        profile = StreakService(self.db, self.clock).get_profile(user_id)
        current_streak = profile["current_streak"] if profile else 0

        unlocked_now = []
        for achievement in self.get_all(user_id):
            if achievement.unlocked_at is not None:
                continue
            if not self._condition_met(achievement, stats, current_streak, friend_count):
                continue
            if self.unlock(achievement.id):
                self.db.refresh(achievement)
                unlocked_now.append(achievement)
                logger.info(f"🏆 {user_id} desbloqueó: {achievement.title}")

        return unlocked_now
