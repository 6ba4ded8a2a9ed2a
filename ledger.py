"""
=============================================================================
LEDGER.PY — Hábitos y registro de completados
=============================================================================
Gestiona:
  - Hábitos (crear, editar, borrado suave, racha por hábito)
  - Completados: UN hecho por hábito por día (upsert, nunca se borra)
  - Consultas derivadas que usan los motores de racha y parcería:
      all_habits_completed_on_date → ¿cumplió el día?

Regla de lectura: si la BD falla en una consulta, se registra el error y
se devuelve un resultado vacío. La UI nunca se cae por una lectura.
"""

import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clock import Clock
from errors import NotFoundError, StoreError, ValidationError
from models import Habit, HabitCompletion, HabitFrequency, Profile, DEFAULT_POINTS
from store import commit, conditional_update

logger = logging.getLogger("habitos.ledger")

# Campos que la UI puede cambiar. points y streak NO están aquí.
EDITABLE_HABIT_FIELDS = {"name", "icon", "frequency"}


# =============================================================================
# ===================== HÁBITOS ===============================================
# =============================================================================

class HabitService:

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    def get_all(self, user_id: str) -> list[Habit]:
        """Hábitos activos del usuario, en orden de creación"""
        try:
            return (
                self.db.query(Habit)
                .filter(Habit.user_id == user_id, Habit.is_active == True)
                .order_by(Habit.created_at)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo hábitos de {user_id}: {e}")
            return []

    def get(self, habit_id: str, user_id: Optional[str] = None) -> Habit:
        """Un hábito por ID. Si se pasa user_id, tiene que ser suyo."""
        query = self.db.query(Habit).filter(Habit.id == habit_id)
        if user_id is not None:
            query = query.filter(Habit.user_id == user_id)
        habit = query.first()
        if not habit:
            raise NotFoundError("Hábito no encontrado")
        return habit

    def create(self, user_id: str, name: str, icon: str = "✅",
               frequency: str = "daily", points: Optional[int] = None) -> Habit:
        """
        Crea un hábito. Si no se indican puntos, se usan los de la
        frecuencia (10 diario, 30 semanal).
        """
        if frequency not in {f.value for f in HabitFrequency}:
            raise ValidationError(f"Frecuencia no válida: {frequency}")
        if points is None:
            points = DEFAULT_POINTS[frequency]
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError("Los puntos deben ser un entero positivo")
        if not name or not name.strip():
            raise ValidationError("El hábito necesita un nombre")

        # El día de creación es el del usuario, no el de UTC
        profile = self.db.get(Profile, user_id)
        local_today = self.clock.for_timezone(profile.timezone if profile else None).today()

        now = self.clock.now()
        habit = Habit(
            user_id=user_id,
            name=name.strip(),
            icon=icon,
            frequency=frequency,
            points=points,
            created_at=now,
            created_date=local_today,
            updated_at=now,
        )
        self.db.add(habit)
        commit(self.db, "crear hábito")
        self.db.refresh(habit)

        logger.info(f"➕ Hábito creado: {habit.name} ({points} pts, user: {user_id})")
        return habit

    def update(self, habit_id: str, user_id: str, updates: dict) -> Habit:
        """Edita nombre, icono o frecuencia. Los puntos quedan fijos."""
        forbidden = set(updates) - EDITABLE_HABIT_FIELDS
        if forbidden:
            raise ValidationError(f"No se puede modificar: {', '.join(sorted(forbidden))}")
        if "frequency" in updates and updates["frequency"] not in {f.value for f in HabitFrequency}:
            raise ValidationError(f"Frecuencia no válida: {updates['frequency']}")

        habit = self.get(habit_id, user_id)
        for key, value in updates.items():
            setattr(habit, key, value)
        habit.updated_at = self.clock.now()
        commit(self.db, "editar hábito")
        self.db.refresh(habit)
        return habit

    def delete(self, habit_id: str, user_id: str) -> bool:
        """Borrado suave: solo se desactiva, el historial se conserva"""
        try:
            habit = self.get(habit_id, user_id)
            habit.is_active = False
            habit.updated_at = self.clock.now()
            commit(self.db, "borrar hábito")
        except (NotFoundError, StoreError) as e:
            logger.error(f"Error borrando hábito {habit_id}: {e}")
            return False
        logger.info(f"🗑️ Hábito desactivado: {habit.name}")
        return True

    def update_streak(self, habit_id: str, streak: int) -> bool:
        try:
            habit = self.get(habit_id)
            habit.streak = max(0, streak)
            commit(self.db, "racha de hábito")
        except (NotFoundError, StoreError) as e:
            logger.error(f"Error actualizando racha del hábito {habit_id}: {e}")
            return False
        return True

    def recompute_streak(self, habit: Habit, day: date) -> int:
        """
        Racha de UN hábito = días seguidos completados terminando en `day`.

        Se recalcula desde los completados, así marcar dos veces el mismo
        día no suma dos veces. Si el hábito no está completado ese día → 0.
        """
        dates = [
            row.completed_date for row in
            self.db.query(HabitCompletion.completed_date)
            .filter(
                HabitCompletion.habit_id == habit.id,
                HabitCompletion.completed == True,
                HabitCompletion.completed_date <= day,
            )
            .order_by(HabitCompletion.completed_date.desc())
            .all()
        ]

        streak = 0
        expected = day
        for d in dates:
            if d != expected:
                break
            streak += 1
            expected = expected - timedelta(days=1)

        self.update_streak(habit.id, streak)
        return streak


# =============================================================================
# ===================== COMPLETADOS ===========================================
# =============================================================================

class CompletionService:

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    def get_all(self, user_id: str) -> list[HabitCompletion]:
        try:
            return (
                self.db.query(HabitCompletion)
                .filter(HabitCompletion.user_id == user_id)
                .order_by(HabitCompletion.completed_date.desc())
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo completados de {user_id}: {e}")
            return []

    def get_by_date(self, user_id: str, day: date) -> list[HabitCompletion]:
        try:
            completions = (
                self.db.query(HabitCompletion)
                .filter(
                    HabitCompletion.user_id == user_id,
                    HabitCompletion.completed_date == day,
                )
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo completados de {user_id} ({day}): {e}")
            return []

        logger.debug(f"get_by_date {user_id} {day}: {len(completions)} registros")
        return completions

    def get_last_7_days(self, user_id: str) -> list[HabitCompletion]:
        """Completados desde hace 7 días hasta hoy (ambos incluidos)"""
        today = self.clock.today()
        week_ago = today - timedelta(days=7)
        try:
            return (
                self.db.query(HabitCompletion)
                .filter(
                    HabitCompletion.user_id == user_id,
                    HabitCompletion.completed_date >= week_ago,
                    HabitCompletion.completed_date <= today,
                )
                .order_by(HabitCompletion.completed_date)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo últimos 7 días de {user_id}: {e}")
            return []

    def toggle(self, user_id: str, habit_id: str, day: date, completed: bool) -> bool:
        """
        Upsert del hecho (hábito, día).

        No decide si se puede "desmarcar": eso es cosa de la UI.
        Devuelve True/False; un hábito que no existe es NotFoundError.
        """
        try:
            self.mark(user_id, habit_id, day, completed)
        except StoreError:
            return False
        return True

    def mark(self, user_id: str, habit_id: str, day: date, completed: bool) -> bool:
        """
        Como toggle, pero dice si ESTA llamada cambió el estado del día.

        Si ya existe la fila → UPDATE condicional "solo si completed es
        distinto". Si no → se inserta. Si otra petición la insertó a la
        vez (choca con la restricción única), se reintenta como UPDATE.

        Dos peticiones iguales a la vez: solo una recibe True. Así el XP
        se suma una vez aunque el usuario pulse dos veces.
        """
        habit = (
            self.db.query(Habit)
            .filter(Habit.id == habit_id, Habit.user_id == user_id)
            .first()
        )
        if not habit:
            raise NotFoundError("Hábito no encontrado")

        logger.debug(f"mark {habit_id} {day} → {completed}")

        if self._flip(habit_id, day, completed):
            return True
        if self._find(habit_id, day) is not None:
            return False

        self.db.add(HabitCompletion(
            habit_id=habit_id,
            user_id=user_id,
            completed_date=day,
            completed=completed,
            created_at=self.clock.now(),
        ))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Completado {habit_id} {day} creado en paralelo, actualizando")
            return self._flip(habit_id, day, completed)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Error guardando completado {habit_id} {day}: {e}")
            raise StoreError("No se pudo guardar el completado") from e

        # Sin fila equivalía a "no completado"
        return completed

    def _flip(self, habit_id: str, day: date, completed: bool) -> bool:
        rows = conditional_update(
            self.db,
            HabitCompletion,
            [
                HabitCompletion.habit_id == habit_id,
                HabitCompletion.completed_date == day,
                HabitCompletion.completed != completed,
            ],
            {"completed": completed},
            "guardar completado",
        )
        return rows == 1

    def _find(self, habit_id: str, day: date) -> Optional[HabitCompletion]:
        try:
            return (
                self.db.query(HabitCompletion)
                .filter(
                    HabitCompletion.habit_id == habit_id,
                    HabitCompletion.completed_date == day,
                )
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as e:
            raise StoreError("No se pudo leer el completado") from e

    def all_habits_completed_on_date(self, user_id: str, day: date,
                                     require_habits: bool = False) -> bool:
        """
        ¿Completó el usuario TODOS sus hábitos activos ese día?

        Solo cuentan los hábitos que ya existían ese día. Sin hábitos, la
        respuesta es True (vacío) salvo que require_habits=True.

        A diferencia del resto de lecturas, aquí un fallo de BD lanza
        StoreError: la racha no se puede calcular a ciegas.
        """
        try:
            habit_ids = {
                row.id for row in
                self.db.query(Habit.id)
                .filter(
                    Habit.user_id == user_id,
                    Habit.is_active == True,
                    Habit.created_date <= day,
                )
                .all()
            }
            if not habit_ids:
                return not require_habits

            completed_ids = {
                row.habit_id for row in
                self.db.query(HabitCompletion.habit_id)
                .filter(
                    HabitCompletion.user_id == user_id,
                    HabitCompletion.completed_date == day,
                    HabitCompletion.completed == True,
                )
                .all()
            }
        except SQLAlchemyError as e:
            logger.error(f"Error comprobando el día {day} de {user_id}: {e}")
            raise StoreError("No se pudo leer el registro de completados") from e

        return habit_ids <= completed_ids

    def check_all_completed_today(self, user_id: str) -> bool:
        return self.all_habits_completed_on_date(user_id, self.clock.today())
