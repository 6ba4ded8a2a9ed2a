"""
=============================================================================
NOTIFICATIONS.PY — Notificaciones push (Expo)
=============================================================================
Envía recordatorios push a los móviles a través de la API de Expo.

Tipos de recordatorio:
  streak_18h → "no olvides tu racha"
  streak_21h → "última llamada"
  streak_23h → "¡última oportunidad!"
  daily      → "hora de los hábitos"

No toca el estado de la gamificación: solo lee perfiles (push_token) y,
para los de racha, quién tiene el día todavía sin cumplir.
"""

import logging
import os
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from clock import Clock
from errors import StoreError, ValidationError
from ledger import CompletionService
from models import Habit, Profile

logger = logging.getLogger("habitos.notifications")

EXPO_PUSH_API_URL = os.getenv("EXPO_PUSH_API_URL", "https://exp.host/--/api/v2/push/send")
PUSH_TIMEOUT_SECONDS = 10.0

REMINDER_TYPES = {
    "streak_18h": {
        "title": "🔥 ¡No olvides tu racha!",
        "body": "Todavía estás a tiempo de mantener tu racha hoy. ¡Vamos!",
        "channelId": "streak",
    },
    "streak_21h": {
        "title": "⚠️ ¡Última llamada para tu racha!",
        "body": "¡Quedan solo 3 horas! Completa tus hábitos antes de medianoche.",
        "channelId": "streak",
    },
    "streak_23h": {
        "title": "🚨 ¡ÚLTIMA OPORTUNIDAD! Tu racha va a volver a cero",
        "body": "Queda menos de una hora. ¡No pierdas tu racha ahora!",
        "channelId": "streak",
    },
    "daily": {
        "title": "🎯 ¡Hora de los hábitos!",
        "body": "No olvides completar tus hábitos de hoy.",
        "channelId": "habits",
    },
}


def build_messages(profiles: list[Profile], reminder_type: str) -> list[dict]:
    """Un mensaje de Expo por perfil con push_token"""
    notification = REMINDER_TYPES[reminder_type]
    return [
        {
            "to": profile.push_token,
            "sound": "default",
            "title": notification["title"],
            "body": notification["body"],
            "data": {"userId": profile.id, "reminderType": reminder_type},
            "priority": "high",
            "channelId": notification["channelId"],
        }
        for profile in profiles
        if profile.push_token
    ]


def users_pending_today(db: Session, clock: Optional[Clock] = None) -> list[str]:
    """
    Usuarios con push_token y al menos un hábito activo que todavía NO
    han completado todos sus hábitos hoy. A ellos van los avisos de racha.
    """
    clock = clock or Clock()
    completions = CompletionService(db, clock)

    profiles = (
        db.query(Profile)
        .filter(Profile.push_token != None)
        .filter(Profile.habits.any(Habit.is_active == True))
        .all()
    )

    pending = []
    for profile in profiles:
        today = clock.for_timezone(profile.timezone).today()
        try:
            if not completions.all_habits_completed_on_date(profile.id, today, require_habits=True):
                pending.append(profile.id)
        except StoreError as e:
            logger.error(f"No se pudo comprobar el día de {profile.id}: {e}")
    return pending


def send_push_notifications(db: Session, reminder_type: str,
                            user_ids: Optional[list[str]] = None,
                            client: Optional[httpx.Client] = None) -> dict:
    """
    Envía el recordatorio a los usuarios indicados (o a todos los que
    tengan push_token si user_ids es None).

    Retorna:
      {"success": True, "sent": 3, "total": 3, "reminder_type": "streak_18h"}
    """
    if reminder_type not in REMINDER_TYPES:
        raise ValidationError(f"Tipo de recordatorio no válido: {reminder_type}")

    query = db.query(Profile).filter(Profile.push_token != None)
    if user_ids is not None:
        if not user_ids:
            return {"success": True, "sent": 0, "total": 0, "reminder_type": reminder_type}
        query = query.filter(Profile.id.in_(user_ids))

    messages = build_messages(query.all(), reminder_type)
    if not messages:
        logger.info(f"📭 Sin destinatarios para '{reminder_type}'")
        return {"success": True, "sent": 0, "total": 0, "reminder_type": reminder_type}

    owns_client = client is None
    client = client or httpx.Client(timeout=PUSH_TIMEOUT_SECONDS)
    try:
        response = client.post(
            EXPO_PUSH_API_URL,
            json=messages,
            headers={"Accept": "application/json", "Accept-Encoding": "gzip, deflate"},
        )
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        # ValueError → Expo respondió algo que no es JSON
        logger.error(f"❌ Error enviando push '{reminder_type}': {e}")
        return {
            "success": False,
            "sent": 0,
            "total": len(messages),
            "reminder_type": reminder_type,
            "error": str(e),
        }
    finally:
        if owns_client:
            client.close()

    tickets = payload.get("data") if isinstance(payload, dict) else None
    sent = sum(1 for t in tickets if t.get("status") == "ok") if isinstance(tickets, list) else 0

    logger.info(f"📲 Push '{reminder_type}': {sent}/{len(messages)} enviados")
    return {"success": True, "sent": sent, "total": len(messages), "reminder_type": reminder_type}
