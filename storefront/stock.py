"""
Contrôle du stock et des variantes avant l'ajout au panier.

Toutes les fonctions sont des lectures pures sur un ``CatalogProduct``: un
refus est un résultat ordinaire, jamais une exception.
"""
from storefront.catalog import min_variant_price, parse_quantity
from storefront.courier import chargeable_weight_for_size

# Messages associés aux codes de refus
REFUSAL_MESSAGES = {
    "enquiry-only": "Ce produit est disponible sur demande seulement",
    "out-of-inventory": "Le produit demandé n'est pas en inventaire",
    "invalid-variant": "Le format demandé est introuvable",
    "invalid-quantity": "La quantité doit être un entier supérieur ou égal à 1",
    "insufficient-stock": "La quantité demandée dépasse le stock disponible",
}


def is_in_stock(product):
    return product.in_stock is True and product.stock_count > 0


def find_variant(product, variant_id):
    if variant_id is None:
        return None
    for variant in product.variants:
        if variant.id == str(variant_id):
            return variant
    return None


def resolve_unit_price(product, variant_id=None):
    if not product.variants:
        return product.base_price
    variant = find_variant(product, variant_id)
    if variant is not None:
        return variant.price
    # Aucun choix valide: on affiche le prix le plus bas
    return min_variant_price(product.variants)


def purchase_refusal(product, variant_id, quantity):
    """Retourne le code de la première règle violée, ou ``None``."""
    if product.enquiry_only:
        return "enquiry-only"
    if not is_in_stock(product):
        return "out-of-inventory"
    if product.variants and find_variant(product, variant_id) is None:
        return "invalid-variant"
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        return "invalid-quantity"
    if quantity > product.stock_count:
        return "insufficient-stock"
    return None


def can_purchase(product, variant_id, quantity):
    return purchase_refusal(product, variant_id, quantity) is None


def clamp_quantity(quantity, stock_count):
    upper = max(1, stock_count or 0)
    parsed = parse_quantity(quantity)
    if parsed is None:
        return 1
    return min(max(1, parsed), upper)


def line_for_purchase(product, variant_id=None):
    """Construit la ligne candidate pour ``Cart.add_line``."""
    variant = find_variant(product, variant_id)
    if variant is None:
        return {
            "id": product.id,
            "name": product.name,
            "unit_price": resolve_unit_price(product),
            "chargeable_weight_kg": product.chargeable_kg,
        }
    return {
        "id": f"{product.id}:{variant.id}",
        "name": f"{product.name} ({variant.size} {variant.unit})",
        "unit_price": variant.price,
        "chargeable_weight_kg": chargeable_weight_for_size(variant.label, product.chargeable_kg),
    }
