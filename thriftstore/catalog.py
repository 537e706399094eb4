"""
catalog: products, variants, categories and the wishlist
"""

import logging
import re
import secrets
from decimal import Decimal, InvalidOperation

from .activity import log_activity
from .db import money, now
from .errors import ValidationError
from .security import clean_int, clean_text

logger = logging.getLogger(__name__)

SORT_ORDERS = {
    'newest': 'p.created_at DESC, p.product_id DESC',
    'price_low': 'p.base_price ASC, p.product_id',
    'price_high': 'p.base_price DESC, p.product_id',
    'name': 'p.name ASC',
}
SIZE_ORDER = ('XS', 'S', 'M', 'L', 'XL', 'XXL', 'XXXL')
HEX_COLOR_RE = re.compile(r'^#[0-9A-Fa-f]{6}$')

SIZE_RANK_SQL = 'CASE pv.size ' + ' '.join(
    f"WHEN '{size}' THEN {rank}" for rank, size in enumerate(SIZE_ORDER, 1)
) + f' ELSE {len(SIZE_ORDER) + 1} END'


def _decimal_or_none(value):
    if value in (None, ''):
        return None
    try:
        return money(Decimal(str(value)))
    except InvalidOperation:
        return None


def slugify(name):
    return re.sub(r'[^a-z0-9]+', '-', (name or '').lower()).strip('-')


# ---------- categories ----------

def list_categories(db):
    return db.fetch_all(
        'SELECT category_id, name, slug FROM categories WHERE is_active ORDER BY display_order, name'
    )


def get_category(db, slug):
    return db.fetch_one('SELECT category_id, name, slug FROM categories WHERE slug = :slug', {'slug': slug})


# ---------- storefront listing ----------

def list_products(db, category=None, search=None, min_price=None, max_price=None,
                  sort='newest', page=1, per_page=12):
    """active products for the shop grid; returns (rows, total)"""
    where = ['p.is_active']
    params = {}
    if category:
        where.append('c.slug = :category')
        params['category'] = category
    if search:
        where.append('(p.name LIKE :term OR p.description LIKE :term)')
        params['term'] = f'%{search}%'
    low = _decimal_or_none(min_price)
    if low is not None:
        where.append('p.base_price >= :min_price')
        params['min_price'] = low
    high = _decimal_or_none(max_price)
    if high is not None:
        where.append('p.base_price <= :max_price')
        params['max_price'] = high
    clause = ' AND '.join(where)
    order_by = SORT_ORDERS.get(sort, SORT_ORDERS['newest'])

    total = db.fetch_value(
        f"""SELECT COUNT(*) AS total FROM products p
            LEFT JOIN categories c ON p.category_id = c.category_id
            WHERE {clause}""",
        params,
        default=0,
    )
    rows = db.fetch_all(
        f"""SELECT p.product_id, p.name, p.slug, p.base_price, p.created_at,
                   c.name AS category_name, c.slug AS category_slug,
                   (SELECT COALESCE(SUM(pv.stock_quantity), 0) FROM product_variants pv
                     WHERE pv.product_id = p.product_id AND pv.is_active) AS total_stock
            FROM products p
            LEFT JOIN categories c ON p.category_id = c.category_id
            WHERE {clause}
            ORDER BY {order_by}
            LIMIT :limit OFFSET :offset""",
        {**params, 'limit': per_page, 'offset': (max(page, 1) - 1) * per_page},
    )
    for row in rows:
        row['base_price'] = money(row['base_price'])
    return rows, total


def get_product(db, slug):
    """active product by slug with its sellable variants, or None"""
    product = db.fetch_one(
        """SELECT p.*, c.name AS category_name, c.slug AS category_slug
           FROM products p
           LEFT JOIN categories c ON p.category_id = c.category_id
           WHERE p.slug = :slug AND p.is_active""",
        {'slug': slug},
    )
    if product is None:
        return None
    product['base_price'] = money(product['base_price'])
    product['variants'] = product_variants(db, product['product_id'])
    prices = [v['final_price'] for v in product['variants']] or [product['base_price']]
    product['min_price'] = min(prices)
    product['max_price'] = max(prices)
    product['in_stock'] = any(v['stock_quantity'] > 0 for v in product['variants'])
    product['colors'] = {}
    for variant in product['variants']:
        product['colors'].setdefault(variant['color'], variant['color_hex'])
    return product


def product_variants(db, product_id, active_only=True):
    rows = db.fetch_all(
        f"""SELECT pv.*, p.base_price
            FROM product_variants pv
            JOIN products p ON pv.product_id = p.product_id
            WHERE pv.product_id = :product_id {'AND pv.is_active' if active_only else ''}
            ORDER BY {SIZE_RANK_SQL}, pv.color""",
        {'product_id': product_id},
    )
    for row in rows:
        row['price_adjustment'] = money(row['price_adjustment'])
        row['final_price'] = money(row['base_price']) + row['price_adjustment']
    return rows


def record_view(db, product_id):
    db.execute(
        'UPDATE products SET view_count = view_count + 1 WHERE product_id = :id', {'id': product_id}
    )


def related_products(db, product, limit=4):
    if not product.get('category_id'):
        return []
    rows = db.fetch_all(
        """SELECT product_id, name, slug, base_price FROM products
           WHERE category_id = :category_id AND product_id != :product_id AND is_active
           ORDER BY view_count DESC, product_id
           LIMIT :limit""",
        {'category_id': product['category_id'], 'product_id': product['product_id'], 'limit': limit},
    )
    for row in rows:
        row['base_price'] = money(row['base_price'])
    return rows


# ---------- wishlist ----------

def get_wishlist(db, user_id):
    rows = db.fetch_all(
        """SELECT w.wishlist_id, w.created_at, p.product_id, p.name, p.slug, p.base_price, p.is_active,
                  (SELECT COALESCE(SUM(pv.stock_quantity), 0) FROM product_variants pv
                    WHERE pv.product_id = p.product_id AND pv.is_active) AS total_stock
           FROM wishlist w
           JOIN products p ON w.product_id = p.product_id
           WHERE w.user_id = :user_id
           ORDER BY w.created_at DESC, w.wishlist_id DESC""",
        {'user_id': user_id},
    )
    for row in rows:
        row['base_price'] = money(row['base_price'])
    return rows


def add_to_wishlist(db, user_id, product_id):
    """returns (success, message)"""
    product = db.fetch_one(
        'SELECT product_id FROM products WHERE product_id = :id AND is_active', {'id': product_id}
    )
    if not product:
        return False, 'Product not found.'
    existing = db.fetch_one(
        'SELECT wishlist_id FROM wishlist WHERE user_id = :user_id AND product_id = :product_id',
        {'user_id': user_id, 'product_id': product_id},
    )
    if existing:
        return True, 'This item is already in your wishlist!'
    db.execute(
        'INSERT INTO wishlist (user_id, product_id, created_at) VALUES (:user_id, :product_id, :ts)',
        {'user_id': user_id, 'product_id': product_id, 'ts': now()},
    )
    return True, 'Added to wishlist!'


def remove_from_wishlist(db, user_id, product_id):
    return db.execute(
        'DELETE FROM wishlist WHERE user_id = :user_id AND product_id = :product_id',
        {'user_id': user_id, 'product_id': product_id},
    ).rowcount > 0


# ============== BACK OFFICE ==============

def admin_list_products(db, search=None, category_id=None, status='active', stock=None, page=1, per_page=20):
    where = ['1=1']
    params = {}
    if search:
        where.append('(p.name LIKE :term OR p.sku LIKE :term)')
        params['term'] = f'%{search}%'
    if category_id:
        where.append('p.category_id = :category_id')
        params['category_id'] = category_id
    if status == 'active':
        where.append('p.is_active')
    elif status == 'inactive':
        where.append('NOT p.is_active')
    having = ''
    if stock == 'out':
        having = 'HAVING COALESCE(SUM(pv.stock_quantity), 0) = 0'
    elif stock == 'low':
        having = 'HAVING COALESCE(SUM(pv.stock_quantity), 0) BETWEEN 1 AND 5'
    clause = ' AND '.join(where)

    base = f"""SELECT p.product_id, p.name, p.slug, p.sku, p.base_price, p.is_active,
                      p.view_count, p.created_at, c.name AS category_name,
                      COUNT(pv.variant_id) AS variant_count,
                      COALESCE(SUM(pv.stock_quantity), 0) AS total_stock
               FROM products p
               LEFT JOIN categories c ON p.category_id = c.category_id
               LEFT JOIN product_variants pv ON p.product_id = pv.product_id
               WHERE {clause}
               GROUP BY p.product_id, p.name, p.slug, p.sku, p.base_price, p.is_active,
                        p.view_count, p.created_at, c.name
               {having}"""
    total = db.fetch_value(f'SELECT COUNT(*) AS total FROM ({base}) listed', params, default=0)
    rows = db.fetch_all(
        f'{base} ORDER BY p.created_at DESC, p.product_id DESC LIMIT :limit OFFSET :offset',
        {**params, 'limit': per_page, 'offset': (max(page, 1) - 1) * per_page},
    )
    for row in rows:
        row['base_price'] = money(row['base_price'])
    return rows, total


def get_product_by_id(db, product_id):
    """any product, active or not - back office lookups"""
    product = db.fetch_one(
        """SELECT product_id, category_id, name, slug, sku, description, base_price, is_active
           FROM products WHERE product_id = :id""",
        {'id': product_id},
    )
    if product:
        product['base_price'] = money(product['base_price'])
    return product


def _read_fields(form, errors):
    fields = {
        'name': clean_text(form.get('name')),
        'category_id': clean_int(form.get('category_id')),
        'description': clean_text(form.get('description')),
        'base_price': _decimal_or_none(form.get('base_price')),
        'sku': clean_text(form.get('sku')).upper(),
    }
    if not fields['name']:
        errors.append('Product name is required.')
    if fields['category_id'] <= 0:
        errors.append('Please select a category.')
    if fields['base_price'] is None or fields['base_price'] <= 0:
        errors.append('Base price must be greater than 0.')
    return fields


def _color_hex(value, color, errors):
    value = clean_text(value)
    if not value:
        return None
    if not HEX_COLOR_RE.match(value):
        errors.append(f'Color code for {color} must look like #1A2B3C.')
        return None
    return value.upper()


def parse_product_form(form):
    """
    Read the add-product form.

    Variants come as a size x color grid: ``sizes`` and ``colors`` are
    repeated fields, cell (i, j) is ``stock_<i>_<j>`` and
    ``price_adjustment_<i>_<j>``. Each color j may carry a swatch in
    ``color_hex_<j>``. Returns (fields, variants).
    """
    errors = []
    fields = _read_fields(form, errors)

    sizes = [clean_text(s).upper() for s in form.getlist('sizes')]
    colors = [clean_text(c) for c in form.getlist('colors')]
    swatches = [_color_hex(form.get(f'color_hex_{j}'), color, errors) if color else None
                for j, color in enumerate(colors)]
    variants = []
    for i, size in enumerate(sizes):
        if not size:
            continue
        for j, color in enumerate(colors):
            if not color:
                continue
            stock = clean_int(form.get(f'stock_{i}_{j}'), 0)
            adjustment = _decimal_or_none(form.get(f'price_adjustment_{i}_{j}')) or money(0)
            if stock < 0:
                errors.append(f'Stock for {size}/{color} cannot be negative.')
            variants.append({'size': size, 'color': color, 'color_hex': swatches[j],
                             'stock_quantity': stock, 'price_adjustment': adjustment})
    if not variants:
        errors.append('Add at least one size and color.')
    if errors:
        raise ValidationError(errors)
    return fields, variants


def _unique_slug(db, name):
    base = slugify(name) or 'product'
    slug, n = base, 1
    while db.fetch_one('SELECT product_id FROM products WHERE slug = :slug', {'slug': slug}):
        n += 1
        slug = f'{base}-{n}'
    return slug


def create_product(db, scope, fields, variants):
    """product row plus its variant grid, all or nothing; returns product_id"""
    if not db.fetch_one('SELECT category_id FROM categories WHERE category_id = :id', {'id': fields['category_id']}):
        raise ValidationError(['Please select a category.'])
    sku = fields.get('sku') or f'TS-{secrets.token_hex(4).upper()}'
    ts = now()

    with db.transaction():
        slug = _unique_slug(db, fields['name'])
        result = db.execute(
            """INSERT INTO products (category_id, name, slug, description, base_price, sku,
                                     is_active, view_count, created_at, updated_at)
               VALUES (:category_id, :name, :slug, :description, :base_price, :sku,
                       :active, 0, :ts, :ts)""",
            {
                'category_id': fields['category_id'],
                'name': fields['name'],
                'slug': slug,
                'description': fields.get('description') or None,
                'base_price': fields['base_price'],
                'sku': sku,
                'active': True,
                'ts': ts,
            },
        )
        product_id = result.lastrowid or db.fetch_value(
            'SELECT product_id FROM products WHERE slug = :slug', {'slug': slug}
        )
        for variant in variants:
            _insert_variant(db, product_id, sku, variant)

    log_activity(db, scope, 'product_created', 'product', product_id,
                 new_values={'name': fields['name'], 'slug': slug, 'variants': len(variants)})
    logger.info('Product %s created with %d variants', slug, len(variants))
    return product_id


def _insert_variant(db, product_id, product_sku, variant):
    return db.execute(
        """INSERT INTO product_variants (product_id, size, color, color_hex, sku, stock_quantity,
                                         price_adjustment, is_active)
           VALUES (:product_id, :size, :color, :color_hex, :sku, :stock, :adjustment, :active)""",
        {
            'product_id': product_id,
            'size': variant['size'],
            'color': variant['color'],
            'color_hex': variant.get('color_hex'),
            'sku': f"{product_sku}-{variant['size']}-{variant['color'][:3].upper()}",
            'stock': variant['stock_quantity'],
            'adjustment': variant['price_adjustment'],
            'active': True,
        },
    ).lastrowid


def update_product(db, scope, product_id, form):
    """edit the product row; slug stays put so links keep working"""
    errors = []
    fields = _read_fields(form, errors)
    if not errors and not db.fetch_one(
        'SELECT category_id FROM categories WHERE category_id = :id', {'id': fields['category_id']}
    ):
        errors.append('Please select a category.')
    if errors:
        raise ValidationError(errors)
    old = db.fetch_one(
        'SELECT name, category_id, description, base_price, sku FROM products WHERE product_id = :id',
        {'id': product_id},
    )
    if not old:
        raise ValidationError(['Product not found.'])
    old['base_price'] = money(old['base_price'])

    new = {
        'name': fields['name'],
        'category_id': fields['category_id'],
        'description': fields['description'] or None,
        'base_price': fields['base_price'],
        'sku': fields['sku'] or old['sku'],
    }
    db.execute(
        """UPDATE products SET name = :name, category_id = :category_id, description = :description,
                               base_price = :base_price, sku = :sku, updated_at = :ts
           WHERE product_id = :id""",
        {**new, 'ts': now(), 'id': product_id},
    )
    changed = [key for key in new if new[key] != old[key]]
    log_activity(db, scope, 'product_updated', 'product', product_id,
                 old_values={k: old[k] for k in changed}, new_values={k: new[k] for k in changed})
    return new


def add_variant(db, scope, product_id, form):
    """one more size/color for an existing product; returns (success, message)"""
    product = db.fetch_one('SELECT sku FROM products WHERE product_id = :id', {'id': product_id})
    if not product:
        return False, 'Product not found'
    size = clean_text(form.get('size')).upper()
    color = clean_text(form.get('color'))
    if not size or not color:
        return False, 'Size and color are required'
    errors = []
    color_hex = _color_hex(form.get('color_hex'), color, errors)
    stock = clean_int(form.get('stock_quantity'), 0)
    if stock < 0:
        errors.append('Stock must be zero or more')
    if errors:
        return False, errors[0]
    if db.fetch_one(
        'SELECT variant_id FROM product_variants WHERE product_id = :id AND size = :size AND color = :color',
        {'id': product_id, 'size': size, 'color': color},
    ):
        return False, f'{size}/{color} already exists for this product'

    variant = {'size': size, 'color': color, 'color_hex': color_hex, 'stock_quantity': stock,
               'price_adjustment': _decimal_or_none(form.get('price_adjustment')) or money(0)}
    variant_id = _insert_variant(db, product_id, product['sku'] or f'TS-{product_id}', variant) or db.fetch_value(
        'SELECT variant_id FROM product_variants WHERE product_id = :id AND size = :size AND color = :color',
        {'id': product_id, 'size': size, 'color': color},
    )
    log_activity(db, scope, 'variant_created', 'product_variant', variant_id, new_values=variant)
    return True, 'Variant added'


def update_variant(db, scope, variant_id, stock_quantity, price_adjustment):
    """returns (success, message)"""
    stock_quantity = clean_int(stock_quantity, -1)
    adjustment = _decimal_or_none(price_adjustment)
    if stock_quantity < 0:
        return False, 'Stock must be zero or more'
    if adjustment is None:
        adjustment = money(0)
    old = db.fetch_one(
        'SELECT product_id, stock_quantity, price_adjustment FROM product_variants WHERE variant_id = :id',
        {'id': variant_id},
    )
    if not old:
        return False, 'Variant not found'

    db.execute(
        """UPDATE product_variants SET stock_quantity = :stock, price_adjustment = :adjustment
           WHERE variant_id = :id""",
        {'stock': stock_quantity, 'adjustment': adjustment, 'id': variant_id},
    )
    log_activity(
        db, scope, 'variant_updated', 'product_variant', variant_id,
        old_values={'stock_quantity': old['stock_quantity'], 'price_adjustment': money(old['price_adjustment'])},
        new_values={'stock_quantity': stock_quantity, 'price_adjustment': adjustment},
    )
    return True, 'Variant updated'


def toggle_product_active(db, scope, product_id):
    row = db.fetch_one('SELECT is_active FROM products WHERE product_id = :id', {'id': product_id})
    if not row:
        return False, 'Product not found'
    active = not row['is_active']
    db.execute(
        'UPDATE products SET is_active = :active, updated_at = :ts WHERE product_id = :id',
        {'active': active, 'ts': now(), 'id': product_id},
    )
    log_activity(db, scope, 'product_status_updated', 'product', product_id,
                 old_values={'is_active': bool(row['is_active'])}, new_values={'is_active': active})
    return True, 'Product activated' if active else 'Product deactivated'
