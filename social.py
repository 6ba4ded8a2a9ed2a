"""
=============================================================================
SOCIAL.PY — Perfiles y Amistades
=============================================================================
Gestiona:
  - Alta de cuenta (perfil + stats iniciales + catálogo de logros)
  - Perfil público y username único
  - Solicitudes de amistad: pedir, aceptar, rechazar, eliminar

Amistad:
  Es simétrica, pero guardamos quién la pidió (requester) y quién la
  recibe (addressee). Solo puede haber UNA fila por pareja, en cualquier
  dirección. Rechazar o deshacer la amistad borra la fila.
"""

import logging
from typing import Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clock import Clock
from errors import NotFoundError, StoreError, ValidationError
from gamification import AchievementService, StatsService
from models import Friendship, FriendshipStatus, Profile, UserStats, ordered_pair
from store import commit

logger = logging.getLogger("habitos.social")

EDITABLE_PROFILE_FIELDS = {"name", "username", "avatar_url", "bio", "is_public", "timezone"}


def _pair_filter(user_a: str, user_b: str):
    """Fila de amistad entre a y b, en cualquier dirección"""
    low, high = ordered_pair(user_a, user_b)
    return and_(Friendship.user_low == low, Friendship.user_high == high)


# =============================================================================
# ===================== PERFILES ==============================================
# =============================================================================

class ProfileService:

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    def register(self, user_id: str, email: str, name: str,
                 timezone: Optional[str] = None) -> Profile:
        """
        Crea la cuenta del usuario (idempotente).

        Flujo:
          1. Perfil con la racha a 0
          2. Fila de stats por defecto (nivel 1, 0 XP, 100 para subir)
          3. Catálogo de logros sembrado
        Si la cuenta ya existía, solo completa lo que falte.
        """
        profile = self.db.get(Profile, user_id)
        if profile is None:
            taken = self.db.query(Profile).filter(Profile.email == email).first()
            if taken:
                raise ValidationError("Ya existe una cuenta con este email")
            now = self.clock.now()
            profile = Profile(
                id=user_id,
                email=email,
                name=name,
                created_at=now,
                updated_at=now,
            )
            if timezone:
                profile.timezone = timezone
            self.db.add(profile)
            commit(self.db, "crear perfil")
            logger.info(f"👤 Nuevo usuario registrado: {name} ({email})")

        stats = StatsService(self.db, self.clock)
        if stats.get(user_id) is None:
            stats.create_default(user_id)

        AchievementService(self.db, self.clock).seed_for_user(user_id)

        self.db.refresh(profile)
        return profile

    def get(self, user_id: str) -> Optional[Profile]:
        try:
            return self.db.get(Profile, user_id)
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo perfil {user_id}: {e}")
            return None

    def get_public(self, username: str) -> Optional[dict]:
        """Perfil público con sus stats. None si no existe o es privado."""
        try:
            profile = self.db.query(Profile).filter(Profile.username == username).first()
            if profile is None or not profile.is_public:
                return None
            stats = self.db.query(UserStats).filter(UserStats.user_id == profile.id).first()
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo perfil público {username}: {e}")
            return None

        return {
            "id": profile.id,
            "name": profile.name,
            "username": profile.username,
            "avatar_url": profile.avatar_url,
            "bio": profile.bio,
            "current_streak": profile.current_streak,
            "longest_streak": profile.longest_streak,
            "level": stats.level if stats else 1,
            "total_points": stats.total_points if stats else 0,
            "total_habits_completed": stats.total_habits_completed if stats else 0,
            "member_since": profile.created_at,
        }

    def check_username_available(self, username: str, current_user_id: str) -> bool:
        existing = (
            self.db.query(Profile.id)
            .filter(Profile.username == username, Profile.id != current_user_id)
            .first()
        )
        return existing is None

    def update(self, user_id: str, updates: dict) -> dict:
        """
        Actualiza el perfil.
        Retorna {"success": bool, "error": str | None}
        """
        forbidden = set(updates) - EDITABLE_PROFILE_FIELDS
        if forbidden:
            raise ValidationError(f"No se puede modificar: {', '.join(sorted(forbidden))}")

        username = updates.get("username")
        if username and not self.check_username_available(username, user_id):
            raise ValidationError("Ese nombre de usuario ya está en uso")

        profile = self.db.get(Profile, user_id)
        if profile is None:
            raise NotFoundError("Perfil no encontrado")

        for key, value in updates.items():
            setattr(profile, key, value)
        profile.updated_at = self.clock.now()
        try:
            commit(self.db, "editar perfil")
        except StoreError as e:
            return {"success": False, "error": e.message}
        return {"success": True, "error": None}

    def save_push_token(self, user_id: str, token: Optional[str]) -> bool:
        profile = self.get(user_id)
        if profile is None:
            return False
        profile.push_token = token
        try:
            commit(self.db, "guardar push token")
        except StoreError:
            return False
        logger.info(f"📱 Push token guardado para {user_id}")
        return True


# =============================================================================
# ===================== AMISTADES =============================================
# =============================================================================

class FriendService:

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    def _friendship_for(self, user_id: str, other_id: str) -> Optional[Friendship]:
        return self.db.query(Friendship).filter(_pair_filter(user_id, other_id)).first()

    def search(self, search_term: str, current_user_id: str, limit: int = 20) -> list[dict]:
        """Busca por nombre o username, con el estado de amistad conmigo"""
        term = f"%{search_term.strip().lower()}%"
        try:
            profiles = (
                self.db.query(Profile)
                .filter(
                    Profile.id != current_user_id,
                    or_(func.lower(Profile.name).like(term), func.lower(Profile.username).like(term)),
                )
                .order_by(Profile.name)
                .limit(limit)
                .all()
            )
            levels = self._levels([p.id for p in profiles])
            results = []
            for p in profiles:
                friendship = self._friendship_for(current_user_id, p.id)
                results.append({
                    "id": p.id,
                    "name": p.name,
                    "username": p.username,
                    "avatar_url": p.avatar_url,
                    "current_streak": p.current_streak,
                    "level": levels.get(p.id, 1),
                    "friendship_status": friendship.status if friendship else None,
                })
        except SQLAlchemyError as e:
            logger.error(f"Error buscando usuarios '{search_term}': {e}")
            return []
        return results

    def send_request(self, requester_id: str, addressee_id: str) -> Friendship:
        """
        Crea una solicitud pendiente.
        Falla con ValidationError si es a uno mismo o si ya hay relación
        (en cualquier dirección) con esa persona. Si dos solicitudes
        cruzadas llegan a la vez, la restricción única de la pareja deja
        pasar solo una.
        """
        if requester_id == addressee_id:
            raise ValidationError("No puedes enviarte una solicitud a ti mismo")
        if self.db.get(Profile, addressee_id) is None:
            raise NotFoundError("Usuario no encontrado")

        existing = self._friendship_for(requester_id, addressee_id)
        if existing:
            if existing.status == FriendshipStatus.accepted.value:
                raise ValidationError("Ya sois amigos")
            raise ValidationError("Ya existe una solicitud con este usuario")

        low, high = ordered_pair(requester_id, addressee_id)
        now = self.clock.now()
        friendship = Friendship(
            requester_id=requester_id,
            addressee_id=addressee_id,
            user_low=low,
            user_high=high,
            status=FriendshipStatus.pending.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(friendship)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Solicitud cruzada {requester_id} ↔ {addressee_id}: ya existía")
            raise ValidationError("Ya existe una solicitud con este usuario")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Error de BD en 'solicitud de amistad': {e}")
            raise StoreError("No se pudo guardar (solicitud de amistad)") from e
        logger.info(f"🤝 Solicitud de amistad {requester_id} → {addressee_id}")
        return friendship

    def accept_request(self, friendship_id: str, user_id: str) -> bool:
        """Solo el destinatario puede aceptar una solicitud pendiente"""
        friendship = self.db.get(Friendship, friendship_id)
        if (
            friendship is None
            or friendship.addressee_id != user_id
            or friendship.status != FriendshipStatus.pending.value
        ):
            return False
        friendship.status = FriendshipStatus.accepted.value
        friendship.updated_at = self.clock.now()
        try:
            commit(self.db, "aceptar amistad")
        except StoreError:
            return False
        logger.info(f"✅ Amistad aceptada: {friendship.requester_id} ↔ {user_id}")
        return True

    def _delete(self, friendship_id: str, user_id: str, action: str) -> bool:
        friendship = self.db.get(Friendship, friendship_id)
        if friendship is None or user_id not in (friendship.requester_id, friendship.addressee_id):
            return False
        self.db.delete(friendship)
        try:
            commit(self.db, action)
        except StoreError:
            return False
        return True

    def reject_request(self, friendship_id: str, user_id: str) -> bool:
        return self._delete(friendship_id, user_id, "rechazar amistad")

    def remove_friend(self, friendship_id: str, user_id: str) -> bool:
        return self._delete(friendship_id, user_id, "eliminar amigo")

    def are_friends(self, user_a: str, user_b: str) -> bool:
        friendship = self._friendship_for(user_a, user_b)
        return friendship is not None and friendship.status == FriendshipStatus.accepted.value

    def _levels(self, user_ids: list[str]) -> dict:
        if not user_ids:
            return {}
        rows = (
            self.db.query(UserStats.user_id, UserStats.level)
            .filter(UserStats.user_id.in_(user_ids))
            .all()
        )
        return {row.user_id: row.level for row in rows}

    def _describe(self, friendship: Friendship, user_id: str, levels: dict) -> dict:
        is_requester = friendship.requester_id == user_id
        friend = friendship.addressee if is_requester else friendship.requester
        return {
            "friendship_id": friendship.id,
            "friend_id": friend.id,
            "name": friend.name,
            "username": friend.username,
            "avatar_url": friend.avatar_url,
            "current_streak": friend.current_streak,
            "level": levels.get(friend.id, 1),
            "status": friendship.status,
            "is_requester": is_requester,
        }

    def get_friends(self, user_id: str) -> list[dict]:
        """Amistades aceptadas, vistas desde user_id"""
        try:
            friendships = (
                self.db.query(Friendship)
                .filter(
                    or_(Friendship.requester_id == user_id, Friendship.addressee_id == user_id),
                    Friendship.status == FriendshipStatus.accepted.value,
                )
                .all()
            )
            friend_ids = [
                f.addressee_id if f.requester_id == user_id else f.requester_id
                for f in friendships
            ]
            levels = self._levels(friend_ids)
            return [self._describe(f, user_id, levels) for f in friendships]
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo amigos de {user_id}: {e}")
            return []

    def get_pending_requests(self, user_id: str) -> list[dict]:
        """Solicitudes RECIBIDAS pendientes"""
        try:
            friendships = (
                self.db.query(Friendship)
                .filter(
                    Friendship.addressee_id == user_id,
                    Friendship.status == FriendshipStatus.pending.value,
                )
                .all()
            )
            levels = self._levels([f.requester_id for f in friendships])
            return [self._describe(f, user_id, levels) for f in friendships]
        except SQLAlchemyError as e:
            logger.error(f"Error leyendo solicitudes de {user_id}: {e}")
            return []

    def get_friend_count(self, user_id: str) -> int:
        try:
            return (
                self.db.query(Friendship)
                .filter(
                    or_(Friendship.requester_id == user_id, Friendship.addressee_id == user_id),
                    Friendship.status == FriendshipStatus.accepted.value,
                )
                .count()
            )
        except SQLAlchemyError as e:
            logger.error(f"Error contando amigos de {user_id}: {e}")
            return 0
