"""
=============================================================================
MAIN.PY — La API del motor de gamificación de hábitos
=============================================================================
Este archivo define TODOS los endpoints de la API REST.

Organización por secciones:
  1. PERFILES       → Alta, perfil propio, perfil público, push token
  2. HÁBITOS        → CRUD de hábitos
  3. COMPLETADOS    → Registro diario + flujo completo de gamificación
  4. GAMIFICACIÓN   → Nivel/XP, racha, logros
  5. AMIGOS         → Búsqueda, solicitudes, lista
  6. PARCERÍAS      → Rachas compartidas entre dos amigos
  7. NOTIFICACIONES → Envío de recordatorios push

El login NO está aquí: lo hace el proveedor de auth (ver auth.py).
"""

import os
import logging
import traceback
from datetime import datetime, date
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import get_current_user, get_token_claims
from clock import Clock
from database import get_db, init_db
from errors import (
    ConflictError, GamificationError, NotFoundError, StoreError, ValidationError
)
from gamification import AchievementService, StatsService, StreakService, get_level_info
from ledger import CompletionService, HabitService
from models import Profile
from notifications import send_push_notifications
from partnerships import PartnershipService
from schemas import *
from sentry_config import capture_exception, init_sentry, set_user_context
from social import FriendService, ProfileService

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("habitos.api")

ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "false").lower() in ("1", "true", "yes")
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Sentry (si hay DSN)
      2. Crear tablas si no existen
      3. Scheduler de avisos y revisión de rachas (si ENABLE_SCHEDULER)

    Apagado:
      - Parar el scheduler limpiamente
    """
    logger.info("🚀 Arrancando motor de hábitos...")

    init_sentry()

    init_db()
    logger.info("✅ Base de datos inicializada")

    if ENABLE_SCHEDULER:
        from scheduler import create_scheduler, start_scheduler
        create_scheduler()
        start_scheduler()
    else:
        logger.info("⏸️ Scheduler desactivado (ENABLE_SCHEDULER)")

    yield  # ← La aplicación está corriendo

    logger.info("🛑 Apagando...")
    if ENABLE_SCHEDULER:
        from scheduler import stop_scheduler
        stop_scheduler()
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Hábitos API",
    description="Motor de gamificación: XP, rachas, logros y parcerías de racha",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS → la app móvil y la web hacen peticiones directas a la API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_clock() -> Clock:
    """Reloj de la petición. Los tests lo sustituyen por un FixedClock."""
    return Clock()


def user_clock(user: Profile, clock: Clock) -> Clock:
    return clock.for_timezone(user.timezone)


# ─────────────────────────────────────────────────────────────────────────────
# ERRORES DEL DOMINIO → HTTP
# ─────────────────────────────────────────────────────────────────────────────

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    StoreError: 503,
}


@app.exception_handler(GamificationError)
async def gamification_exception_handler(request: Request, exc: GamificationError):
    status_code = ERROR_STATUS.get(type(exc), 500)
    if status_code >= 500:
        logger.error(f"❌ {type(exc).__name__} en {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


# Captura CUALQUIER error no manejado y devuelve un JSON con el error real
# en vez de un genérico "Internal Server Error"
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados, los registra y los manda a Sentry"""
    error_msg = str(exc)
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {error_msg}\n{error_trace}")
    capture_exception(exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "detail": error_msg,
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check():
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "Hábitos API",
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat()
    }


# =============================================================================
# ===================== SECCIÓN 1: PERFILES ===================================
# =============================================================================

@app.post("/profiles", response_model=ProfileResponse, tags=["Profiles"])
def register_profile(
    data: ProfileCreate,
    claims: dict = Depends(get_token_claims),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Alta del usuario tras su primer login: perfil, stats iniciales y
    catálogo de logros. Llamarlo otra vez no duplica nada.
    """
    return ProfileService(db, clock).register(claims["sub"], data.email, data.name, data.timezone)


@app.get("/profiles/me", response_model=ProfileResponse, tags=["Profiles"])
def get_me(user: Profile = Depends(get_current_user)):
    set_user_context(user.id)
    return user


@app.patch("/profiles/me", response_model=ProfileResponse, tags=["Profiles"])
def update_me(
    data: ProfileUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    result = ProfileService(db, clock).update(user.id, data.model_dump(exclude_unset=True))
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    db.refresh(user)
    return user


@app.get("/profiles/username-available", response_model=UsernameAvailability, tags=["Profiles"])
def username_available(
    username: str = Query(min_length=3, max_length=50),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    available = ProfileService(db).check_username_available(username, user.id)
    return {"username": username, "available": available}


@app.get("/profiles/u/{username}", response_model=PublicProfileResponse, tags=["Profiles"])
def get_public_profile(
    username: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    profile = ProfileService(db).get_public(username)
    if profile is None:
        raise HTTPException(status_code=404, detail="Perfil no encontrado o privado")
    return profile


@app.put("/profiles/me/push-token", tags=["Profiles"])
def save_push_token(
    data: PushTokenUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": ProfileService(db).save_push_token(user.id, data.push_token)}


# =============================================================================
# ===================== SECCIÓN 2: HÁBITOS ====================================
# =============================================================================

@app.post("/habits", response_model=HabitResponse, tags=["Habits"])
def create_habit(
    data: HabitCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return HabitService(db, clock).create(
        user.id, data.name, data.icon, data.frequency.value, data.points
    )


@app.get("/habits", response_model=list[HabitResponse], tags=["Habits"])
def list_habits(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    """Hábitos activos, en orden de creación"""
    return HabitService(db).get_all(user.id)


@app.get("/habits/{habit_id}", response_model=HabitResponse, tags=["Habits"])
def get_habit(habit_id: str, user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    return HabitService(db).get(habit_id, user.id)


@app.patch("/habits/{habit_id}", response_model=HabitResponse, tags=["Habits"])
def update_habit(
    habit_id: str,
    data: HabitUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    updates = data.model_dump(exclude_unset=True, exclude_none=True)
    if "frequency" in updates:
        updates["frequency"] = updates["frequency"].value
    return HabitService(db, clock).update(habit_id, user.id, updates)


@app.delete("/habits/{habit_id}", tags=["Habits"])
def delete_habit(
    habit_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Borrado suave: el historial de completados se conserva"""
    if not HabitService(db, clock).delete(habit_id, user.id):
        raise HTTPException(status_code=404, detail="Hábito no encontrado")
    return {"success": True}


# =============================================================================
# ===================== SECCIÓN 3: COMPLETADOS ================================
# =============================================================================

def apply_completion(db: Session, clock: Clock, user: Profile, habit_id: str,
                     day: date, completed: bool) -> dict:
    """
    Marca o desmarca un hábito y propaga el cambio a la gamificación.

    Orden:
      1. Guardar el completado (ledger)
      2. XP: +puntos al marcar, -puntos al desmarcar (solo si ESTA
         petición cambió el día; un doble toque no suma dos veces)
      3. Racha del hábito
      4. Racha global          ← después de guardar el completado
      5. Logros
      6. Parcerías activas     (solo al marcar)

    No hay transacción que lo englobe todo: si un paso falla, se
    registra en `errors` y se sigue con el resto. Todos los pasos se
    pueden repetir sin efecto doble.
    """
    habits = HabitService(db, clock)
    habit = habits.get(habit_id, user.id)

    changed = CompletionService(db, clock).mark(user.id, habit_id, day, completed)

    outcome = {
        "habit_id": habit_id,
        "date": day,
        "completed": completed,
        "habit_streak": None,
        "xp": None,
        "streak": None,
        "new_achievements": [],
        "partnerships": {},
        "errors": [],
    }

    def step(name, fn):
        try:
            return fn()
        except GamificationError as e:
            logger.error(f"⚠️ Paso '{name}' falló para {user.id}: {e.message}")
            outcome["errors"].append(f"{name}: {e.message}")
            return None

    stats_service = StatsService(db, clock)
    if changed:
        if completed:
            outcome["xp"] = step("xp", lambda: stats_service.add_xp(user.id, habit.points))
        else:
            step("xp", lambda: stats_service.remove_xp(user.id, habit.points))

    outcome["habit_streak"] = step("habit_streak", lambda: habits.recompute_streak(habit, day))
    outcome["streak"] = step("streak", lambda: StreakService(db, clock).check(user.id))

    stats = stats_service.get(user.id)
    if stats is not None:
        friend_count = FriendService(db, clock).get_friend_count(user.id)
        unlocked = step(
            "achievements",
            lambda: AchievementService(db, clock).check_and_unlock(
                user.id, stats, habits.get_all(user.id), friend_count
            ),
        )
        outcome["new_achievements"] = unlocked or []

    if completed:
        partnerships = PartnershipService(db, clock)
        for partnership in partnerships.get_active_for_user(user.id):
            progress = step(
                f"partnership {partnership.id}",
                lambda: partnerships.check_partnership_progress(partnership.id),
            )
            if progress is not None:
                outcome["partnerships"][partnership.id] = progress

    return outcome


@app.post("/habits/{habit_id}/complete", response_model=CompletionOutcome, tags=["Completions"])
def complete_habit(
    habit_id: str,
    day: Optional[date] = Query(default=None, alias="date"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Marca el hábito (hoy por defecto) y aplica XP, rachas, logros y parcerías"""
    clock = user_clock(user, clock)
    return apply_completion(db, clock, user, habit_id, day or clock.today(), True)


@app.post("/habits/{habit_id}/uncomplete", response_model=CompletionOutcome, tags=["Completions"])
def uncomplete_habit(
    habit_id: str,
    day: Optional[date] = Query(default=None, alias="date"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Desmarca el hábito: resta XP (el nivel no baja) y recalcula rachas"""
    clock = user_clock(user, clock)
    return apply_completion(db, clock, user, habit_id, day or clock.today(), False)


@app.post("/completions/toggle", tags=["Completions"])
def toggle_completion(
    data: CompletionToggle,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Solo el registro, sin gamificación. La UI decide qué hacer después."""
    ok = CompletionService(db, clock).toggle(user.id, data.habit_id, data.date, data.completed)
    return {"success": ok}


@app.get("/completions", response_model=list[CompletionResponse], tags=["Completions"])
def list_completions(
    day: Optional[date] = Query(default=None, alias="date"),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    completions = CompletionService(db)
    if day is not None:
        return completions.get_by_date(user.id, day)
    return completions.get_all(user.id)


@app.get("/completions/last-7-days", response_model=list[CompletionResponse], tags=["Completions"])
def last_7_days(
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return CompletionService(db, user_clock(user, clock)).get_last_7_days(user.id)


@app.get("/completions/today", response_model=DayStatus, tags=["Completions"])
def today_status(
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """¿Ha completado hoy todos sus hábitos activos?"""
    clock = user_clock(user, clock)
    return {
        "date": clock.today(),
        "all_completed": CompletionService(db, clock).check_all_completed_today(user.id),
    }


# =============================================================================
# ===================== SECCIÓN 4: GAMIFICACIÓN ===============================
# =============================================================================

@app.get("/stats", response_model=LevelInfo, tags=["Gamification"])
def get_stats(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    stats = StatsService(db).get(user.id)
    if stats is None:
        raise HTTPException(status_code=404, detail="Estadísticas del usuario no encontradas")
    return get_level_info(stats)


@app.post("/stats/xp", response_model=XPResult, tags=["Gamification"])
def add_xp(
    data: XPChange,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return StatsService(db, clock).add_xp(user.id, data.points)


@app.post("/stats/xp/remove", tags=["Gamification"])
def remove_xp(
    data: XPChange,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return {"success": StatsService(db, clock).remove_xp(user.id, data.points)}


@app.get("/streak", response_model=StreakProfile, tags=["Gamification"])
def get_streak(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    profile = StreakService(db).get_profile(user.id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Perfil no encontrado")
    return profile


@app.post("/streak/check", response_model=StreakResult, tags=["Gamification"])
def check_streak(
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Recalcula la racha para hoy. Se puede llamar las veces que haga falta."""
    return StreakService(db, clock).check(user.id)


@app.get("/achievements", response_model=list[AchievementResponse], tags=["Gamification"])
def list_achievements(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    return AchievementService(db).get_all(user.id)


@app.post("/achievements/check", response_model=list[AchievementResponse], tags=["Gamification"])
def check_achievements(
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Desbloquea lo que ya se cumpla y devuelve SOLO los recién desbloqueados"""
    stats = StatsService(db, clock).get(user.id)
    if stats is None:
        raise HTTPException(status_code=404, detail="Estadísticas del usuario no encontradas")
    friend_count = FriendService(db, clock).get_friend_count(user.id)
    habits = HabitService(db, clock).get_all(user.id)
    return AchievementService(db, clock).check_and_unlock(user.id, stats, habits, friend_count)


# =============================================================================
# ===================== SECCIÓN 5: AMIGOS =====================================
# =============================================================================

@app.get("/friends/search", response_model=list[UserSearchResult], tags=["Friends"])
def search_users(
    q: str = Query(min_length=1),
    limit: int = Query(default=20, ge=1, le=50),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return FriendService(db).search(q, user.id, limit)


@app.post("/friends/requests", response_model=FriendshipResponse, tags=["Friends"])
def send_friend_request(
    data: FriendRequestCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return FriendService(db, clock).send_request(user.id, data.addressee_id)


@app.get("/friends/requests", response_model=list[FriendResponse], tags=["Friends"])
def pending_requests(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    """Solicitudes recibidas pendientes"""
    return FriendService(db).get_pending_requests(user.id)


@app.post("/friends/requests/{friendship_id}/accept", tags=["Friends"])
def accept_friend_request(
    friendship_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return {"success": FriendService(db, clock).accept_request(friendship_id, user.id)}


@app.post("/friends/requests/{friendship_id}/reject", tags=["Friends"])
def reject_friend_request(
    friendship_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": FriendService(db).reject_request(friendship_id, user.id)}


@app.get("/friends", response_model=list[FriendResponse], tags=["Friends"])
def list_friends(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    return FriendService(db).get_friends(user.id)


@app.get("/friends/count", tags=["Friends"])
def friend_count(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"count": FriendService(db).get_friend_count(user.id)}


@app.delete("/friends/{friendship_id}", tags=["Friends"])
def remove_friend(
    friendship_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": FriendService(db).remove_friend(friendship_id, user.id)}


# =============================================================================
# ===================== SECCIÓN 6: PARCERÍAS ==================================
# =============================================================================

@app.post("/partnerships", response_model=PartnershipResponse, tags=["Partnerships"])
def create_partnership(
    data: PartnershipCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return PartnershipService(db, clock).create_invite(user.id, data.friend_id, data.target_days)


@app.get("/partnerships", response_model=list[PartnershipView], tags=["Partnerships"])
def list_partnerships(user: Profile = Depends(get_current_user), db: Session = Depends(get_db)):
    return PartnershipService(db).get_user_partnerships(user.id)


@app.post("/partnerships/{partnership_id}/accept", tags=["Partnerships"])
def accept_partnership(
    partnership_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return {"success": PartnershipService(db, user_clock(user, clock)).accept_invite(partnership_id, user.id)}


@app.post("/partnerships/{partnership_id}/cancel", tags=["Partnerships"])
def cancel_partnership(
    partnership_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return {"success": PartnershipService(db, clock).cancel_partnership(partnership_id, user.id)}


@app.patch("/partnerships/{partnership_id}/reminder", tags=["Partnerships"])
def update_partnership_reminder(
    partnership_id: str,
    data: PartnershipReminderUpdate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    ok = PartnershipService(db, clock).update_reminder_settings(partnership_id, user.id, data.enabled)
    return {"success": ok}


@app.post("/partnerships/{partnership_id}/progress", response_model=PartnershipProgress, tags=["Partnerships"])
def partnership_progress(
    partnership_id: str,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    service = PartnershipService(db, user_clock(user, clock))
    partnership = service.get(partnership_id)
    if user.id not in (partnership.user1_id, partnership.user2_id):
        raise HTTPException(status_code=404, detail="Parcería no encontrada")
    return service.check_partnership_progress(partnership_id)


# =============================================================================
# ===================== SECCIÓN 7: NOTIFICACIONES =============================
# =============================================================================

@app.post("/notifications/send", response_model=PushResult, tags=["Notifications"])
def send_notifications(
    data: PushRequest,
    x_admin_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    """
    Envía un recordatorio push. Pensado para un cron externo: se
    autentica con la cabecera X-Admin-Key, no con el token de usuario.
    """
    if not ADMIN_API_KEY or x_admin_key != ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="No autorizado")
    return send_push_notifications(db, data.reminder_type, data.user_ids)
