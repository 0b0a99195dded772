"""
Panier d'achat: lignes, mutations et totaux dérivés (articles, poids, courrier)
"""
import logging
import math
import threading
import time
import uuid

from storefront.courier import absorb_float_noise, calculate_courier_fee, sanitize_weight

logger = logging.getLogger(__name__)


def _sanitize_amount(value):
    # Prix et poids: nombre fini >= 0, sinon 0
    return sanitize_weight(value)


def _floor_quantity(value):
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return math.floor(number)


class Cart:
    """Lignes d'un panier, protégées par un verrou propre à chaque panier."""

    def __init__(self):
        self._lines = []
        self.lock = threading.RLock()

    def __len__(self):
        with self.lock:
            return len(self._lines)

    @property
    def is_empty(self):
        return len(self) == 0

    @property
    def lines(self):
        with self.lock:
            return [dict(line) for line in self._lines]

    def _find(self, line_id):
        line_id = str(line_id)
        for line in self._lines:
            if line["id"] == line_id:
                return line
        return None

    def add_line(self, candidate, quantity=1):
        quantity = _floor_quantity(quantity)
        if quantity is None or quantity < 1:
            logger.debug("Quantité ignorée pour %s", candidate.get("id"))
            return

        line_id = str(candidate["id"])
        with self.lock:
            existing = self._find(line_id)
            if existing is not None:
                # Le prix et le poids du premier ajout sont conservés
                existing["quantity"] += quantity
            else:
                self._lines.append({
                    "id": line_id,
                    "name": str(candidate.get("name") or ""),
                    "unit_price": _sanitize_amount(candidate.get("unit_price")),
                    "quantity": quantity,
                    "chargeable_weight_kg": _sanitize_amount(candidate.get("chargeable_weight_kg")),
                })
        logger.debug("Ajout de %s x %s au panier", quantity, line_id)

    def set_quantity(self, line_id, quantity):
        quantity = _floor_quantity(quantity)
        if quantity is None:
            return
        quantity = max(0, quantity)

        with self.lock:
            line = self._find(line_id)
            if line is None:
                return
            if quantity == 0:
                self._lines.remove(line)
            else:
                line["quantity"] = quantity

    def remove_line(self, line_id):
        line_id = str(line_id)
        with self.lock:
            self._lines = [line for line in self._lines if line["id"] != line_id]

    def clear(self):
        with self.lock:
            self._lines = []

    def derived_totals(self):
        with self.lock:
            items_total = sum(l["unit_price"] * l["quantity"] for l in self._lines)
            total_weight = sum(l["chargeable_weight_kg"] * l["quantity"] for l in self._lines)

        total_weight = absorb_float_noise(total_weight)
        courier = calculate_courier_fee(total_weight)
        items_total = round(items_total, 2)
        return {
            "items_total": items_total,
            "total_chargeable_weight": total_weight,
            "courier_fee": courier["fee"],
            "courier_bracket": courier["bracket"],
            "grand_total": round(items_total + courier["fee"], 2),
        }

    def snapshot(self):
        """Lignes et totaux lus sous le même verrou."""
        with self.lock:
            return self.lines, self.derived_totals()


class CartRegistry:
    """Détient les paniers de chaque session, de leur création à leur abandon.

    Un panier inactif depuis plus de ``idle_ttl`` secondes est abandonné.
    """

    def __init__(self, idle_ttl=None, clock=time.monotonic):
        self._carts = {}
        self._last_seen = {}
        self._lock = threading.Lock()
        self.idle_ttl = idle_ttl
        self._clock = clock

    def __len__(self):
        with self._lock:
            return len(self._carts)

    @staticmethod
    def new_session_id():
        return uuid.uuid4().hex

    def _evict_idle(self, now):
        if self.idle_ttl is None:
            return
        expired = [sid for sid, seen in self._last_seen.items() if now - seen > self.idle_ttl]
        for session_id in expired:
            del self._carts[session_id]
            del self._last_seen[session_id]
        if expired:
            logger.info("%d panier(s) inactif(s) abandonné(s)", len(expired))

    def get(self, session_id):
        with self._lock:
            now = self._clock()
            self._evict_idle(now)
            cart = self._carts.get(session_id)
            if cart is not None:
                self._last_seen[session_id] = now
            return cart

    def get_or_create(self, session_id):
        with self._lock:
            now = self._clock()
            self._evict_idle(now)
            cart = self._carts.get(session_id)
            if cart is None:
                cart = self._carts[session_id] = Cart()
                logger.info("Nouveau panier pour la session %s", session_id)
            self._last_seen[session_id] = now
            return cart

    def discard(self, session_id):
        with self._lock:
            self._carts.pop(session_id, None)
            self._last_seen.pop(session_id, None)
