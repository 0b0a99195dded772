"""
Normalisation des fiches produits reçues du catalogue.

Les enregistrements arrivent peu typés (variantes et images en liste, en
chaîne JSON ou absentes, prix en texte). On les valide une seule fois ici pour
produire des ``CatalogProduct``/``Variant`` stricts.
"""
import json
import logging
import math
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

VARIANT_UNITS = ("kg", "l")

# Source unique des libellés de catégories
CATEGORIES = [
    "Mushroom Grow Kits",
    "Mushroom Grain & Cultures",
    "Mushroom Cultivation Supplies",
    "Medicinal Mushroom Supplements",
    "Bulk Herbal Products",
]

ENQUIRY_ONLY_CATEGORIES = ["Bulk Herbal Products"]

SORT_OPTIONS = ("featured", "price-asc", "price-desc", "name-asc", "name-desc")


@dataclass(frozen=True)
class Variant:
    id: str
    unit: str
    size: str
    price: float

    @property
    def label(self):
        return f"{self.size}{self.unit.upper()}"


@dataclass(frozen=True)
class CatalogProduct:
    id: str
    name: str
    category: str
    base_price: float
    stock_count: int = 0
    in_stock: bool = False
    variants: tuple = ()
    enquiry_only: bool = False
    chargeable_kg: float = 0.0
    images: tuple = field(default=())
    active: bool = True
    description: str = ""


def parse_currency(value):
    """Convertit un prix saisi ("299", "299,99", " 1 250.5") en float.

    Retourne ``None`` si la valeur est vide, invalide, négative ou non finie.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = "".join(str(value).split()).replace(",", ".")
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def parse_quantity(value):
    """Quantité entière (arrondie vers le bas) ou ``None`` si illisible."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return math.floor(number)


def _coerce_list(raw):
    if isinstance(raw, (list, tuple)):
        return list(raw)
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return []
        if isinstance(parsed, list):
            return parsed
    return []


def parse_variant(raw):
    if not isinstance(raw, dict):
        return None
    variant_id = str(raw.get("id") or "").strip()
    unit = raw.get("unit")
    size = str(raw.get("size") or "").strip()
    price = parse_currency(raw.get("price"))
    if not variant_id or unit not in VARIANT_UNITS or not size:
        return None
    if price is None or price <= 0:
        return None
    return Variant(id=variant_id, unit=unit, size=size, price=price)


def normalize_variants(raw):
    variants = []
    for item in _coerce_list(raw):
        variant = parse_variant(item)
        if variant is None:
            logger.debug("Variante invalide ignorée: %r", item)
            continue
        variants.append(variant)
    return variants


def coerce_images(raw, fallback=None):
    images = [str(x).strip() for x in _coerce_list(raw) if x is not None]
    images = [x for x in images if x]
    if images:
        return images
    fallback = str(fallback or "").strip()
    return [fallback] if fallback else []


def norm_category(label):
    return " ".join(str(label or "").lower().replace("&", "and").split())


# Associe n'importe quelle saisie ("and" ou "&") à une catégorie officielle
def to_category(label):
    wanted = norm_category(label)
    for category in CATEGORIES:
        if norm_category(category) == wanted:
            return category
    return None


def is_enquiry_only(category, enquiry_categories=None):
    if enquiry_categories is None:
        enquiry_categories = ENQUIRY_ONLY_CATEGORIES
    wanted = norm_category(category)
    return any(norm_category(c) == wanted for c in enquiry_categories)


def parse_product(record, enquiry_categories=None):
    stock_count = parse_quantity(record.get("stock_count"))
    if stock_count is None or stock_count < 0:
        stock_count = 0

    category = str(record.get("category") or "").strip()
    base_price = parse_currency(record.get("price"))
    chargeable_kg = parse_currency(record.get("chargeable_kg"))

    return CatalogProduct(
        id=str(record.get("id") or ""),
        name=str(record.get("name") or "").strip(),
        category=category,
        base_price=base_price if base_price is not None else 0.0,
        stock_count=stock_count,
        in_stock=record.get("in_stock") is True,
        variants=tuple(normalize_variants(record.get("variants"))),
        enquiry_only=is_enquiry_only(category, enquiry_categories),
        chargeable_kg=chargeable_kg if chargeable_kg is not None else 0.0,
        images=tuple(coerce_images(record.get("images"), record.get("image_url"))),
        active=record.get("active") is not False,
        description=str(record.get("description") or "").strip(),
    )


def min_variant_price(variants):
    if not variants:
        return None
    return min(v.price for v in variants)


def display_price(product):
    lowest = min_variant_price(product.variants)
    return lowest if lowest is not None else product.base_price


def filter_products(products, query="", category=None, min_price=None,
                    max_price=None, sort="featured"):
    """Filtre et trie une liste de ``CatalogProduct`` pour la vitrine."""
    q = str(query or "").strip().lower()
    wanted_category = norm_category(category) if category and category != "All" else None
    low = parse_currency(min_price)
    high = parse_currency(max_price)

    selected = []
    for product in products:
        if not product.active:
            continue
        if wanted_category and norm_category(product.category) != wanted_category:
            continue
        if q and q not in f"{product.name} {product.category}".lower():
            continue
        price = display_price(product)
        if low is not None and price < low:
            continue
        if high is not None and price > high:
            continue
        selected.append(product)

    if sort == "price-asc":
        selected.sort(key=display_price)
    elif sort == "price-desc":
        selected.sort(key=display_price, reverse=True)
    elif sort == "name-asc":
        selected.sort(key=lambda p: p.name.lower())
    elif sort == "name-desc":
        selected.sort(key=lambda p: p.name.lower(), reverse=True)
    return selected
