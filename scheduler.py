"""
=============================================================================
SCHEDULER.PY — Tareas automáticas
=============================================================================
Funciones:
  1. Avisos de racha a las 18:00, 21:00 y 23:00 a quien todavía no ha
     cumplido el día
  2. Revisión de rachas a medianoche: recalcula la racha de todos los
     usuarios para que las rotas se vean aunque no abran la app

Usa APScheduler con CronTrigger en la zona horaria por defecto.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from clock import Clock, DEFAULT_TIMEZONE
from database import SessionLocal
from errors import GamificationError
from gamification import StreakService
from models import Profile
from notifications import send_push_notifications, users_pending_today

logger = logging.getLogger("habitos.scheduler")

scheduler: Optional[AsyncIOScheduler] = None

STREAK_REMINDERS = {
    "streak_18h": 18,
    "streak_21h": 21,
    "streak_23h": 23,
}


# =============================================================================
# ===================== AVISOS DE RACHA =======================================
# =============================================================================

async def send_streak_reminder(reminder_type: str):
    """Avisa solo a quien tiene el día pendiente"""
    db = SessionLocal()
    try:
        pending = users_pending_today(db, Clock())
        if not pending:
            logger.info(f"⏰ {reminder_type}: nadie con el día pendiente")
            return
        result = send_push_notifications(db, reminder_type, pending)
        logger.info(f"⏰ {reminder_type}: {result['sent']}/{result['total']} avisos")
    except Exception as e:
        logger.error(f"Error en {reminder_type}: {e}")
    finally:
        db.close()


# =============================================================================
# ===================== TAREA DE MEDIANOCHE ===================================
# =============================================================================

def sweep_streaks(db, clock: Optional[Clock] = None) -> dict:
    """
    Ejecuta StreakService.check para todos los perfiles con racha > 0.
    Retorna {"checked": N, "broken": M}
    """
    service = StreakService(db, clock or Clock())
    user_ids = [row.id for row in db.query(Profile.id).filter(Profile.current_streak > 0).all()]

    broken = 0
    for user_id in user_ids:
        try:
            if service.check(user_id)["streak_broken"]:
                broken += 1
        except GamificationError as e:
            logger.error(f"Error revisando la racha de {user_id}: {e}")

    return {"checked": len(user_ids), "broken": broken}


async def midnight_check():
    """Se ejecuta a las 00:05: revisa las rachas del día anterior"""
    db = SessionLocal()
    try:
        result = sweep_streaks(db)
        logger.info(f"🌙 Rachas revisadas: {result['checked']}, rotas: {result['broken']}")
    except Exception as e:
        logger.error(f"Error en midnight_check: {e}")
    finally:
        db.close()


# =============================================================================
# ===================== INICIALIZAR SCHEDULER =================================
# =============================================================================

def create_scheduler() -> AsyncIOScheduler:
    """
    Crea y configura el scheduler.

    Tareas:
      - 18:00 / 21:00 / 23:00: avisos de racha
      - 00:05: revisión de rachas
    """
    global scheduler

    scheduler = AsyncIOScheduler(timezone=DEFAULT_TIMEZONE)

    for reminder_type, hour in STREAK_REMINDERS.items():
        scheduler.add_job(
            send_streak_reminder,
            CronTrigger(hour=hour, minute=0),
            args=[reminder_type],
            id=reminder_type,
            name=f"Aviso de racha {hour}h",
            replace_existing=True,
        )

    # 00:05 para dar margen al cambio de día
    scheduler.add_job(
        midnight_check,
        CronTrigger(hour=0, minute=5),
        id="midnight_check",
        name="Revisar rachas",
        replace_existing=True,
    )

    logger.info("⏰ Scheduler configurado: avisos 18/21/23h + midnight check")
    return scheduler


def start_scheduler():
    global scheduler
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler arrancado")


def stop_scheduler():
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler parado")
