"""
=============================================================================
PARTNERSHIPS.PY — Parcerías de Racha (racha compartida entre dos amigos)
=============================================================================
Dos amigos acuerdan un objetivo de N días (1-365). Un día cuenta para la
parcería solo si LOS DOS completaron todos sus hábitos ese día.

Estados:
  pending ──(acepta el invitado)──→ active ──(racha = objetivo)──→ completed
     │                                 │
     └────────(cualquiera cancela)─────┴──→ cancelled   (terminal)

El problema difícil:
  Cada socio completa su último hábito desde su móvil y los dos llaman a
  check_partnership_progress casi a la vez. El día tiene que contar UNA
  vez. Por eso el incremento es un UPDATE condicional ("solo si
  last_activity_date todavía no es hoy"): la BD deja pasar a uno solo.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clock import Clock
from errors import NotFoundError, StoreError, ValidationError
from ledger import CompletionService
from models import Profile, StreakPartnership, PartnershipStatus, ordered_pair
from social import FriendService
from store import conditional_update

logger = logging.getLogger("habitos.partnerships")

MIN_TARGET_DAYS = 1
MAX_TARGET_DAYS = 365

OPEN_STATUSES = (PartnershipStatus.pending.value, PartnershipStatus.active.value)

# Resultados de check_partnership_progress
PROGRESS_COUNTED = "counted"
PROGRESS_WAITING = "waiting"
PROGRESS_ALREADY_COUNTED = "already_counted"
PROGRESS_TARGET_REACHED = "target_reached"
PROGRESS_INACTIVE = "inactive"


def _involves(user_id: str):
    return or_(StreakPartnership.user1_id == user_id, StreakPartnership.user2_id == user_id)


class PartnershipService:

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()
        self.completions = CompletionService(db, self.clock)

    # ─────────────────────────────────────────────────────────────────────────
    # CONSULTAS
    # ─────────────────────────────────────────────────────────────────────────

    def get(self, partnership_id: str) -> StreakPartnership:
        try:
            partnership = self.db.get(StreakPartnership, partnership_id, populate_existing=True)
        except SQLAlchemyError as e:
            raise StoreError("No se pudo leer la parcería") from e
        if partnership is None:
            raise NotFoundError("Parcería no encontrada")
        return partnership

    def _open_between(self, user_a: str, user_b: str) -> Optional[StreakPartnership]:
        low, high = ordered_pair(user_a, user_b)
        return (
            self.db.query(StreakPartnership)
            .filter(
                StreakPartnership.user_low == low,
                StreakPartnership.user_high == high,
                StreakPartnership.status.in_(OPEN_STATUSES),
            )
            .first()
        )

    def get_active_for_user(self, user_id: str) -> list[StreakPartnership]:
        try:
            return (
                self.db.query(StreakPartnership)
                .filter(_involves(user_id), StreakPartnership.status == PartnershipStatus.active.value)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo parcerías activas de {user_id}: {e}")
            return []

    def get_user_partnerships(self, user_id: str) -> list[dict]:
        """Todas las parcerías del usuario vistas desde su lado (con el socio)"""
        try:
            partnerships = (
                self.db.query(StreakPartnership)
                .filter(_involves(user_id))
                .order_by(StreakPartnership.created_at.desc())
                .all()
            )
            result = []
            for p in partnerships:
                is_user1 = p.user1_id == user_id
                partner = p.user2 if is_user1 else p.user1
                result.append({
                    "id": p.id,
                    "partner_id": partner.id,
                    "partner_name": partner.name,
                    "partner_username": partner.username,
                    "partner_avatar_url": partner.avatar_url,
                    "status": p.status,
                    "target_days": p.target_days,
                    "current_streak": p.current_streak,
                    "start_date": p.start_date,
                    "end_date": p.end_date,
                    "last_activity_date": p.last_activity_date,
                    "reminder_enabled": p.reminder_enabled,
                    "is_user1": is_user1,
                })
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo parcerías de {user_id}: {e}")
            return []
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # CICLO DE VIDA
    # ─────────────────────────────────────────────────────────────────────────

    def create_invite(self, user_id: str, friend_id: str, target_days: int) -> StreakPartnership:
        """
        Invita a un amigo. user1 = quien invita, user2 = invitado.

        ValidationError (mensaje para la UI) si:
          - el objetivo no está entre 1 y 365
          - se invita a sí mismo
          - no son amigos (amistad aceptada)
          - ya hay una parcería pendiente o activa entre los dos
            (también si dos invitaciones cruzadas llegan a la vez: el
            índice único de la pareja deja pasar solo una)
        """
        if (
            isinstance(target_days, bool)
            or not isinstance(target_days, int)
            or not MIN_TARGET_DAYS <= target_days <= MAX_TARGET_DAYS
        ):
            raise ValidationError(f"El objetivo debe estar entre {MIN_TARGET_DAYS} y {MAX_TARGET_DAYS} días")
        if user_id == friend_id:
            raise ValidationError("No puedes crear una parcería contigo mismo")
        if self.db.get(Profile, friend_id) is None:
            raise NotFoundError("Usuario no encontrado")
        if not FriendService(self.db, self.clock).are_friends(user_id, friend_id):
            raise ValidationError("Solo puedes crear parcerías con tus amigos")
        if self._open_between(user_id, friend_id):
            raise ValidationError("Ya tienes una parcería activa o pendiente con este amigo")

        low, high = ordered_pair(user_id, friend_id)
        now = self.clock.now()
        partnership = StreakPartnership(
            user1_id=user_id,
            user2_id=friend_id,
            user_low=low,
            user_high=high,
            status=PartnershipStatus.pending.value,
            target_days=target_days,
            current_streak=0,
            reminder_enabled=True,
            created_at=now,
            updated_at=now,
        )
        self.db.add(partnership)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Invitación cruzada {user_id} ↔ {friend_id}: ya había una abierta")
            raise ValidationError("Ya tienes una parcería activa o pendiente con este amigo")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Error de BD en 'crear parcería': {e}")
            raise StoreError("No se pudo guardar (crear parcería)") from e
        logger.info(f"📨 Parcería {user_id} → {friend_id} ({target_days} días)")
        return partnership

    def _transition(self, conditions: list, values: dict, action: str) -> bool:
        """UPDATE condicional; un fallo de BD es un simple False"""
        try:
            rows = conditional_update(
                self.db, StreakPartnership, conditions,
                {**values, "updated_at": self.clock.now()}, action,
            )
        except StoreError:
            return False
        return rows == 1

    def accept_invite(self, partnership_id: str, user_id: str) -> bool:
        """
        Solo el invitado (user2) acepta, y solo si sigue pendiente.
        No lanza excepciones: False si no se cumple algo.
        """
        accepted = self._transition(
            [
                StreakPartnership.id == partnership_id,
                StreakPartnership.user2_id == user_id,
                StreakPartnership.status == PartnershipStatus.pending.value,
            ],
            {
                "status": PartnershipStatus.active.value,
                "start_date": self.clock.today(),
                "current_streak": 0,
                "last_activity_date": None,
            },
            "aceptar parcería",
        )
        if accepted:
            logger.info(f"🔥 Parcería {partnership_id} activada")
        return accepted

    def cancel_partnership(self, partnership_id: str, user_id: str) -> bool:
        """Cualquiera de los dos cancela, desde pending o active"""
        cancelled = self._transition(
            [
                StreakPartnership.id == partnership_id,
                _involves(user_id),
                StreakPartnership.status.in_(OPEN_STATUSES),
            ],
            {"status": PartnershipStatus.cancelled.value},
            "cancelar parcería",
        )
        if cancelled:
            logger.info(f"🛑 Parcería {partnership_id} cancelada por {user_id}")
        return cancelled

    def update_reminder_settings(self, partnership_id: str, user_id: str, enabled: bool) -> bool:
        """Solo un flag: no cambia el estado de la parcería"""
        return self._transition(
            [StreakPartnership.id == partnership_id, _involves(user_id)],
            {"reminder_enabled": bool(enabled)},
            "recordatorios de parcería",
        )

    # ─────────────────────────────────────────────────────────────────────────
    # PROGRESO
    # ─────────────────────────────────────────────────────────────────────────

    def check_partnership_progress(self, partnership_id: str) -> dict:
        """
        Se llama cuando cualquiera de los dos completa su día.

        Si los dos cumplieron hoy y el día no estaba contado → +1.
        Si la racha llega al objetivo → completed + end_date = hoy.
        Si faltó un día entre medias, la racha compartida vuelve a empezar.

        Seguro de llamar dos veces (o desde los dos móviles a la vez):
        el día solo cuenta una vez.

        Retorna:
          {
            "status": "counted" | "waiting" | "already_counted"
                      | "target_reached" | "inactive",
            "both_completed": bool,
            "user1_completed": bool,
            "user2_completed": bool,
            "already_counted": bool,
            "target_reached": bool,
            "current_streak": int
          }
        """
        partnership = self.get(partnership_id)
        today = self.clock.today()
        yesterday = today - timedelta(days=1)

        result = {
            "status": PROGRESS_INACTIVE,
            "both_completed": False,
            "user1_completed": False,
            "user2_completed": False,
            "already_counted": False,
            "target_reached": False,
            "current_streak": partnership.current_streak,
        }

        if partnership.status != PartnershipStatus.active.value:
            return result

        if partnership.last_activity_date == today:
            result.update(status=PROGRESS_ALREADY_COUNTED, already_counted=True)
            return result

        user1_done = self.completions.all_habits_completed_on_date(
            partnership.user1_id, today, require_habits=True
        )
        user2_done = self.completions.all_habits_completed_on_date(
            partnership.user2_id, today, require_habits=True
        )
        result.update(user1_completed=user1_done, user2_completed=user2_done)

        if not (user1_done and user2_done):
            result["status"] = PROGRESS_WAITING
            return result

        seen_streak = partnership.current_streak
        seen_last = partnership.last_activity_date
        if seen_last is not None and seen_last < yesterday:
            new_streak = 1
            logger.info(f"💔 Parcería {partnership_id}: se perdió un día, vuelve a empezar")
        else:
            new_streak = seen_streak + 1

        reached = new_streak >= partnership.target_days
        values = {
            "current_streak": new_streak,
            "last_activity_date": today,
            "updated_at": self.clock.now(),
        }
        if reached:
            values["status"] = PartnershipStatus.completed.value
            values["end_date"] = today

        # ── Compare-and-set: solo una petición puede contar el día ──
        rows = conditional_update(
            self.db,
            StreakPartnership,
            [
                StreakPartnership.id == partnership_id,
                StreakPartnership.status == PartnershipStatus.active.value,
                StreakPartnership.current_streak == seen_streak,
                or_(
                    StreakPartnership.last_activity_date.is_(None),
                    StreakPartnership.last_activity_date != today,
                ),
            ],
            values,
            "contar día de parcería",
        )

        if rows == 0:
            fresh = self.get(partnership_id)
            logger.info(f"⏭️ Parcería {partnership_id}: el día ya lo contó otra petición")
            result.update(
                status=PROGRESS_ALREADY_COUNTED,
                already_counted=True,
                current_streak=fresh.current_streak,
            )
            return result

        result.update(both_completed=True, current_streak=new_streak)
        if reached:
            result.update(status=PROGRESS_TARGET_REACHED, target_reached=True)
            logger.info(f"🏆 Parcería {partnership_id} completada ({new_streak} días)")
        else:
            result["status"] = PROGRESS_COUNTED
            logger.info(f"🔥 Parcería {partnership_id}: día {new_streak}/{partnership.target_days}")
        return result
