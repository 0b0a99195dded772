"""
Moteur de calcul des frais de courrier selon le poids facturable total du panier
"""
import math

# Tranches de poids (poids en kg inclus, frais en rands, nom de la tranche)
COURIER_RATES = [
    (5, 100, "0-5kg"),
    (10, 140, "5-10kg"),
    (15, 180, "10-15kg"),
    (20, 220, "15-20kg"),
]

COURIER_BRACKETS = [bracket for _, _, bracket in COURIER_RATES] + ["over-20kg"]

# Au-dessus de 20kg: +40 par bloc de 5kg entamé
EXTENSION_BLOCK_KG = 5
EXTENSION_BLOCK_FEE = 40

# Poids facturable des kits selon l'étiquette de format
GROW_KIT_WEIGHTS_KG = {
    "1L": 1,
    "2.5L": 1.5,
    "2,5L": 1.5,
    "5L": 2.5,
    "20L": 10,
    "Box": 1.5,
}


def sanitize_weight(value):
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(weight) or weight < 0:
        return 0.0
    return weight


# Écart toléré autour d'une borne entière (bruit de somme flottante)
FLOAT_NOISE_KG = 1e-9


def absorb_float_noise(weight):
    nearest = round(weight)
    if math.isclose(weight, nearest, rel_tol=0, abs_tol=FLOAT_NOISE_KG):
        return float(nearest)
    return weight


# Fonction pour calculer les frais de courrier selon le poids
def calculate_courier_fee(total_weight_kg):
    weight_used = sanitize_weight(total_weight_kg)

    for max_weight, fee, bracket in COURIER_RATES:
        if weight_used <= max_weight:
            return {"fee": fee, "bracket": bracket, "weight_used": weight_used}

    last_max, last_fee, _ = COURIER_RATES[-1]
    extra_blocks = math.ceil((weight_used - last_max) / EXTENSION_BLOCK_KG)
    return {
        "fee": last_fee + extra_blocks * EXTENSION_BLOCK_FEE,
        "bracket": "over-20kg",
        "weight_used": weight_used,
    }


def chargeable_weight_for_size(size_label, default=0.0):
    return GROW_KIT_WEIGHTS_KG.get(str(size_label or "").strip(), default)


# Poids total à partir d'articles {size, quantity}; un format inconnu compte pour 0kg
def total_weight_from_sizes(items):
    total = 0.0
    for item in items:
        weight = chargeable_weight_for_size(item.get("size"))
        try:
            quantity = max(0, int(item.get("quantity") or 0))
        except (TypeError, ValueError):
            quantity = 0
        total += weight * quantity
    return total


def checkout_blocked_by_weight(total_weight_kg, max_weight_kg=None):
    """Politique de paiement: bloque au-delà d'un poids maximal configurable.

    N'influence jamais le calcul des frais. ``None`` désactive la limite.
    """
    if max_weight_kg is None:
        return False
    return sanitize_weight(total_weight_kg) > max_weight_kg
