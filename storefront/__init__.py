import datetime
import json
import logging
import os
import time
import uuid

import click
import requests
from flask import Flask, current_app, jsonify, request, session
from flask.cli import with_appcontext
from peewee import *

from storefront.cart import Cart, CartRegistry
from storefront.catalog import (
    SORT_OPTIONS,
    display_price,
    filter_products,
    normalize_variants,
    min_variant_price,
    parse_currency,
    parse_product,
    parse_quantity,
    to_category,
)
from storefront.courier import checkout_blocked_by_weight
from storefront.stock import (
    REFUSAL_MESSAGES,
    clamp_quantity,
    is_in_stock,
    line_for_purchase,
    purchase_refusal,
)

logger = logging.getLogger(__name__)

# Database setup
db = SqliteDatabase('database.db')

class BaseModel(Model):
    class Meta:
        database = db

def new_product_id():
    return uuid.uuid4().hex

class Product(BaseModel):
    id = CharField(primary_key=True, default=new_product_id)
    name = CharField()
    description = TextField(default="")
    category = CharField(default="")
    price = FloatField(default=0)
    # Stock: les deux champs peuvent être absents ou se contredire
    in_stock = BooleanField(null=True)
    stock_count = IntegerField(null=True)
    chargeable_kg = FloatField(default=0)
    image_url = CharField(null=True)
    images = TextField(default="[]")
    variants = TextField(default="[]")
    active = BooleanField(default=True)
    created_at = DateTimeField(default=datetime.datetime.now)

class Order(BaseModel):
    id = AutoField()
    reference = CharField()
    # Totaux au moment du paiement
    items_total = FloatField()
    courier_fee = FloatField()
    courier_bracket = CharField()
    total_weight = FloatField()
    grand_total = FloatField()
    # Customer details
    first_name = CharField()
    last_name = CharField()
    email = CharField()
    phone = CharField()
    # Delivery address
    address_line1 = CharField()
    address_line2 = CharField(null=True)
    suburb = CharField()
    city = CharField()
    province = CharField()
    postal_code = CharField()
    # Copie JSON des lignes du panier
    lines = TextField()
    paid_at = DateTimeField(default=datetime.datetime.now)


CUSTOMER_FIELDS = ("first_name", "last_name", "email", "phone")
ADDRESS_FIELDS = ("line1", "suburb", "city", "province", "postal_code")


def error_response(scope, code, name, status=422):
    return jsonify({
        "errors": {
            scope: {
                "code": code,
                "name": name
            }
        }
    }), status


def product_not_found_response():
    return error_response("product", "not-found", "Le produit demandé est introuvable", 404)


def serialize_variant(variant):
    return {
        "id": variant.id,
        "unit": variant.unit,
        "size": variant.size,
        "price": variant.price,
    }


def serialize_product(product):
    return {
        "id": product.id,
        "name": product.name,
        "category": product.category,
        "description": product.description,
        "price": product.base_price,
        "display_price": display_price(product),
        "stock_count": product.stock_count,
        "in_stock": is_in_stock(product),
        "enquiry_only": product.enquiry_only,
        "chargeable_kg": product.chargeable_kg,
        "images": list(product.images),
        "variants": [serialize_variant(v) for v in product.variants],
    }


def serialize_order(order):
    return {
        "id": order.id,
        "reference": order.reference,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "totals": {
            "items_total": order.items_total,
            "courier_fee": order.courier_fee,
            "courier_bracket": order.courier_bracket,
            "total_weight": order.total_weight,
            "grand_total": order.grand_total,
        },
        "customer": {
            "first_name": order.first_name,
            "last_name": order.last_name,
            "email": order.email,
            "phone": order.phone,
        },
        "address": {
            "line1": order.address_line1,
            "line2": order.address_line2,
            "suburb": order.suburb,
            "city": order.city,
            "province": order.province,
            "postal_code": order.postal_code,
        },
        "lines": json.loads(order.lines or "[]"),
    }


def product_row(product):
    """Champs du modèle ``Product`` à partir d'un ``CatalogProduct``."""
    row = {
        "name": product.name,
        "description": product.description,
        "category": product.category,
        "price": product.base_price,
        "in_stock": product.in_stock,
        "stock_count": product.stock_count,
        "chargeable_kg": product.chargeable_kg,
        "images": json.dumps(list(product.images)),
        "variants": json.dumps([serialize_variant(v) for v in product.variants]),
        "active": product.active,
    }
    if product.id:
        row["id"] = product.id
    return row


def load_product(product_id):
    record = Product.select().where(Product.id == str(product_id)).dicts().first()
    if record is None:
        return None
    return parse_product(record, current_app.config['ENQUIRY_ONLY_CATEGORIES'])


def with_variant_ids(raw_variants):
    # Les formats saisis dans l'admin n'ont pas toujours d'identifiant
    if not isinstance(raw_variants, list):
        return raw_variants
    return [
        dict(v, id=v.get("id") or uuid.uuid4().hex) if isinstance(v, dict) else v
        for v in raw_variants
    ]


def product_fields_from_payload(payload, partial=False):
    """Valide le formulaire d'édition produit.

    Retourne ``(fields, None)`` ou ``(None, (code, name))``.
    """
    fields = {}

    if not partial or "name" in payload:
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            return None, ("missing-fields", "Le nom du produit est obligatoire")
        fields["name"] = name.strip()

    if not partial or "category" in payload:
        category = to_category(payload.get("category"))
        if category is None:
            return None, ("invalid-category", "La catégorie est invalide")
        fields["category"] = category

    if "description" in payload:
        fields["description"] = str(payload.get("description") or "").strip()

    if not partial or "variants" in payload or "price" in payload:
        variants = normalize_variants(with_variant_ids(payload.get("variants")))
        base_price = parse_currency(payload.get("price"))
        if not variants and base_price is None:
            return None, ("invalid-price", "Entrez un prix de base OU ajoutez au moins un format")
        if variants:
            fields["price"] = min_variant_price(variants)
            fields["variants"] = json.dumps([serialize_variant(v) for v in variants])
        else:
            fields["price"] = base_price
            if not partial or "variants" in payload:
                fields["variants"] = "[]"

    if not partial or "stock_count" in payload:
        stock_count = parse_currency(payload.get("stock_count", 0))
        if stock_count is None:
            return None, ("invalid-stock", "Le stock doit être un nombre (0 ou plus)")
        fields["stock_count"] = int(stock_count)
        fields["in_stock"] = fields["stock_count"] > 0

    if not partial or "chargeable_kg" in payload:
        chargeable_kg = parse_currency(payload.get("chargeable_kg", 0))
        if chargeable_kg is None:
            return None, ("invalid-weight", "Le poids facturable est invalide")
        fields["chargeable_kg"] = chargeable_kg

    if "images" in payload:
        images = payload.get("images")
        if not isinstance(images, list):
            return None, ("invalid-images", "Les images doivent être une liste d'URL")
        fields["images"] = json.dumps([str(x).strip() for x in images if str(x).strip()])

    if "active" in payload:
        fields["active"] = payload.get("active") is not False

    return fields, None


def existing_cart():
    """Panier de la session, sans en créer un pour une simple lecture."""
    cart_id = session.get("cart_id")
    if cart_id is None:
        return None
    return current_app.extensions["carts"].get(cart_id)


def current_cart():
    carts = current_app.extensions["carts"]
    cart_id = session.get("cart_id")
    if cart_id is None:
        cart_id = session["cart_id"] = carts.new_session_id()
    return carts.get_or_create(cart_id)


def quantity_in_cart(lines, product_id, exclude=None):
    # Toutes les lignes d'un produit partagent son stock, variantes comprises
    return sum(
        line["quantity"] for line in lines
        if line["id"].split(":", 1)[0] == product_id and line["id"] != exclude
    )


def checkout_allowed(lines, totals):
    if not lines:
        return False
    max_kg = current_app.config['COURIER_MAX_CHECKOUT_KG']
    return not checkout_blocked_by_weight(totals["total_chargeable_weight"], max_kg)


def cart_response(cart):
    if cart is None:
        cart = Cart()
    lines, totals = cart.snapshot()
    return jsonify({
        "cart": {
            "lines": lines,
            **totals,
            "checkout_allowed": checkout_allowed(lines, totals),
        }
    }), 200


def read_fields(payload, names):
    """Retourne les champs texte nettoyés, ou ``None`` si l'un manque."""
    if not isinstance(payload, dict):
        return None
    values = {}
    for name in names:
        value = payload.get(name)
        if not isinstance(value, str) or not value.strip():
            return None
        values[name] = value.strip()
    return values


def create_app(test_config=None):
    """Create and configure an instance of the Flask application."""
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY='dev',
        DATABASE=os.path.join(app.instance_path, 'storefront.sqlite'),
        CATALOG_URL=None,
        ENQUIRY_ONLY_CATEGORIES=["Bulk Herbal Products"],
        # None: aucune limite de poids au paiement
        COURIER_MAX_CHECKOUT_KG=None,
        # Un panier inactif plus longtemps est abandonné
        CART_IDLE_TTL_SECONDS=24 * 3600,
    )

    if test_config is None:
        # load the instance config, if it exists, when not testing
        app.config.from_pyfile('config.py', silent=True)
    else:
        # load the test config if passed in
        app.config.update(test_config)

    # ensure the instance folder exists
    try:
        os.makedirs(app.instance_path)
    except OSError:
        pass

    if not app.config.get('TESTING'):
        db.init(app.config['DATABASE'])

    app.extensions["carts"] = CartRegistry(idle_ttl=app.config['CART_IDLE_TTL_SECONDS'])

    @app.before_request
    def before_request():
        db.connect(reuse_if_open=True)

    @app.teardown_request
    def teardown_request(exc):
        if not db.is_closed():
            db.close()

    @app.route('/api/products')
    def api_list_products():
        """API endpoint pour obtenir les produits en JSON"""
        enquiry_categories = app.config['ENQUIRY_ONLY_CATEGORIES']
        products = [
            parse_product(record, enquiry_categories)
            for record in Product.select().order_by(Product.created_at.desc()).dicts()
        ]
        sort = request.args.get('sort', 'featured')
        if sort not in SORT_OPTIONS:
            sort = 'featured'
        selected = filter_products(
            products,
            query=request.args.get('q', ''),
            category=request.args.get('category'),
            min_price=request.args.get('min_price'),
            max_price=request.args.get('max_price'),
            sort=sort,
        )
        return jsonify({'products': [serialize_product(p) for p in selected]})

    @app.route('/api/products/<product_id>', methods=['GET'])
    def api_get_product(product_id):
        product = load_product(product_id)
        if product is None or not product.active:
            return product_not_found_response()
        return jsonify({'product': serialize_product(product)}), 200

    @app.route('/api/products', methods=['POST'])
    def api_create_product():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return error_response("product", "missing-fields", "Le nom du produit est obligatoire")

        fields, error = product_fields_from_payload(payload)
        if error is not None:
            return error_response("product", *error)

        record = Product.create(**fields)
        app.logger.info("Produit créé: %s (%s)", record.name, record.id)
        return jsonify({'product': serialize_product(load_product(record.id))}), 201

    @app.route('/api/products/<product_id>', methods=['PUT'])
    def api_update_product(product_id):
        record = Product.get_or_none(Product.id == product_id)
        if record is None:
            return product_not_found_response()

        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return error_response("product", "missing-fields", "Aucun champ à mettre à jour")

        fields, error = product_fields_from_payload(payload, partial=True)
        if error is not None:
            return error_response("product", *error)

        if fields:
            Product.update(**fields).where(Product.id == product_id).execute()
        return jsonify({'product': serialize_product(load_product(product_id))}), 200

    @app.route('/api/products/<product_id>', methods=['DELETE'])
    def api_delete_product(product_id):
        deleted = Product.delete().where(Product.id == product_id).execute()
        if not deleted:
            return product_not_found_response()
        app.logger.info("Produit supprimé: %s", product_id)
        return '', 204

    @app.route('/cart', methods=['GET'])
    def get_cart():
        return cart_response(existing_cart())

    @app.route('/cart', methods=['DELETE'])
    def clear_cart():
        cart = existing_cart()
        if cart is not None:
            cart.clear()
        return cart_response(cart)

    @app.route('/cart/lines', methods=['POST'])
    def add_cart_line():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict) or payload.get('product_id') is None:
            return error_response("product", "missing-fields", "L'ajout au panier nécessite un produit")

        product = load_product(payload['product_id'])
        if product is None or not product.active:
            return product_not_found_response()

        variant_id = payload.get('variant_id')
        quantity = payload.get('quantity', 1)
        if isinstance(quantity, float) and quantity.is_integer():
            quantity = int(quantity)

        refusal = purchase_refusal(product, variant_id, quantity)
        if refusal is not None:
            return error_response("product", refusal, REFUSAL_MESSAGES[refusal])

        cart = current_cart()
        with cart.lock:
            # Le stock couvre aussi ce qui est déjà au panier
            if quantity_in_cart(cart.lines, product.id) + quantity > product.stock_count:
                return error_response(
                    "product", "insufficient-stock", REFUSAL_MESSAGES["insufficient-stock"]
                )
            cart.add_line(line_for_purchase(product, variant_id), quantity)
        return cart_response(cart)

    @app.route('/cart/lines/<line_id>', methods=['PUT'])
    def update_cart_line(line_id):
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict) or 'quantity' not in payload:
            return error_response("cart", "missing-fields", "La quantité est obligatoire")

        cart = existing_cart()
        if cart is None:
            return cart_response(None)

        quantity = parse_quantity(payload['quantity'])
        if quantity is None or quantity <= 0:
            # Illisible: aucun changement; zéro ou moins: retrait de la ligne
            cart.set_quantity(line_id, quantity)
            return cart_response(cart)

        product = load_product(line_id.split(":", 1)[0])
        if product is None:
            return product_not_found_response()

        with cart.lock:
            others = quantity_in_cart(cart.lines, product.id, exclude=line_id)
            cart.set_quantity(line_id, clamp_quantity(quantity, product.stock_count - others))
        return cart_response(cart)

    @app.route('/cart/lines/<line_id>', methods=['DELETE'])
    def remove_cart_line(line_id):
        cart = existing_cart()
        if cart is not None:
            cart.remove_line(line_id)
        return cart_response(cart)

    @app.route('/session', methods=['DELETE'])
    def end_session():
        # Fin de session: le panier est abandonné
        cart_id = session.pop('cart_id', None)
        if cart_id is not None:
            app.extensions["carts"].discard(cart_id)
        return '', 204

    @app.route('/checkout', methods=['POST'])
    def checkout():
        cart = existing_cart()
        if cart is None:
            cart = Cart()

        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            payload = {}
        customer = read_fields(payload.get('customer'), CUSTOMER_FIELDS)
        address = read_fields(payload.get('address'), ADDRESS_FIELDS)

        # Lignes, totaux, commande et vidage du panier dans une seule section
        with cart.lock:
            lines, totals = cart.snapshot()

            if not lines:
                return error_response("cart", "empty-cart", "Le panier est vide")

            if not checkout_allowed(lines, totals):
                return error_response(
                    "cart",
                    "courier-quote-required",
                    "Le poids du panier nécessite une soumission du transporteur"
                )

            if customer is None or address is None:
                return error_response(
                    "order",
                    "missing-fields",
                    "Il manque un ou plusieurs champs qui sont obligatoires"
                )

            line2 = payload['address'].get('line2')
            line2 = line2.strip() if isinstance(line2, str) and line2.strip() else None

            order = Order.create(
                reference=f"VE-{int(time.time() * 1000)}",
                items_total=totals["items_total"],
                courier_fee=totals["courier_fee"],
                courier_bracket=totals["courier_bracket"],
                total_weight=totals["total_chargeable_weight"],
                grand_total=totals["grand_total"],
                first_name=customer["first_name"],
                last_name=customer["last_name"],
                email=customer["email"],
                phone=customer["phone"],
                address_line1=address["line1"],
                address_line2=line2,
                suburb=address["suburb"],
                city=address["city"],
                province=address["province"],
                postal_code=address["postal_code"],
                lines=json.dumps(lines),
            )
            cart.clear()
        app.logger.info("Commande %s enregistrée (%.2f)", order.reference, order.grand_total)

        response = jsonify({})
        response.status_code = 302
        response.headers['Location'] = f"/order/{order.id}"
        return response

    @app.route('/order/<int:order_id>', methods=['GET'])
    def get_order(order_id):
        order = Order.get_or_none(Order.id == order_id)
        if order is None:
            return error_response("order", "not-found", "La commande demandée est introuvable", 404)

        return jsonify({"order": serialize_order(order)}), 200

    # Register the init-db command
    app.cli.add_command(init_db_command)
    return app

def init_db(catalog_url=None):
    """Clear existing data and create new tables."""
    db.connect(reuse_if_open=True)
    db.drop_tables([Product, Order], safe=True)
    db.create_tables([Product, Order])

    count = 0
    if catalog_url:
        # Fetch products from remote catalog and populate the database
        try:
            response = requests.get(catalog_url, timeout=10)
            response.raise_for_status()
            records = response.json().get('products', [])

            with db.atomic():
                for record in records:
                    product = parse_product(record)
                    if not product.name:
                        logger.warning("Produit sans nom ignoré: %r", record.get("id"))
                        continue
                    Product.create(**product_row(product))
                    count += 1
            logger.info("Successfully fetched and stored %d products.", count)

        except requests.exceptions.RequestException as e:
            logger.error("Error fetching products: %s", e)

    db.close()
    return count


@click.command('init-db')
@with_appcontext
def init_db_command():
    """Clear existing data and create new tables."""
    count = init_db(current_app.config['CATALOG_URL'])
    click.echo(f'Initialized the database ({count} products).')
