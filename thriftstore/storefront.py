"""
customer-facing routes: account, catalog, cart, checkout, orders, wishlist
"""

import logging
import math
from dataclasses import replace

from flask import (
    Blueprint,
    current_app,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from sqlalchemy.exc import SQLAlchemyError

from . import accounts, cart, catalog, checkout, orders
from .activity import log_activity
from .db import get_db
from .errors import EmptyCartError, OutOfStockError, StoreError, ValidationError
from .security import clean_int, clean_text
from .sessions import csrf_protect, login_required

logger = logging.getLogger(__name__)

bp = Blueprint('storefront', __name__, template_folder='templates')

OUT_OF_STOCK_MESSAGE = 'Some items in your cart are out of stock. Please update your cart.'


def _pages(total, per_page):
    return max(1, math.ceil(total / per_page))


def _safe_next(target):
    # only same-site paths
    if target and target.startswith('/') and not target.startswith('//'):
        return target
    return url_for('storefront.index')


@bp.route('/')
def index():
    db = get_db()
    newest, _ = catalog.list_products(db, per_page=8)
    return render_template('storefront/index.html', products=newest, categories=catalog.list_categories(db))


# ---------- ACCOUNT ----------

@bp.route('/register', methods=['GET', 'POST'])
@csrf_protect
def register():
    if g.scope.is_authenticated:
        return redirect(url_for('storefront.index'))
    errors = []
    if request.method == 'POST':
        db = get_db()
        try:
            user_id = accounts.register_user(
                db, request.form,
                current_app.config['MIN_PASSWORD_LENGTH'], current_app.config['MAX_PASSWORD_LENGTH'],
            )
        except ValidationError as e:
            errors = e.errors
        else:
            log_activity(db, replace(g.scope, user_id=user_id), 'user_registered', 'user', user_id,
                         new_values={'username': clean_text(request.form.get('username'))})
            flash('Registration successful! Please login.', 'success')
            return redirect(url_for('storefront.login'))
    return render_template('storefront/register.html', errors=errors, form=request.form)


@bp.route('/login', methods=['GET', 'POST'])
@csrf_protect
def login():
    if g.scope.is_authenticated:
        return redirect(url_for('storefront.index'))
    errors = []
    next_url = request.values.get('next', '')
    if request.method == 'POST':
        db = get_db()
        try:
            user = accounts.authenticate_user(
                db, request.form.get('email'), request.form.get('password', ''), g.scope.ip_address,
                current_app.config['MAX_LOGIN_ATTEMPTS'], current_app.config['LOGIN_TIMEOUT_MINUTES'],
            )
        except ValidationError as e:
            errors = e.errors
        else:
            g.scope.sign_in_user(user['user_id'], user['username'])
            log_activity(db, g.scope, 'user_login', 'user', user['user_id'])
            flash(f"Welcome back, {user['username']}!", 'success')
            return redirect(_safe_next(next_url))
    return render_template('storefront/login.html', errors=errors, next_url=next_url,
                           email=request.form.get('email', ''))


@bp.route('/logout', methods=['POST'])
@csrf_protect
def logout():
    if g.scope.is_authenticated:
        log_activity(get_db(), g.scope, 'user_logout', 'user', g.scope.user_id)
    g.scope.sign_out('user_id', 'username')
    flash('You have been logged out.', 'info')
    return redirect(url_for('storefront.index'))


@bp.route('/profile', methods=['GET', 'POST'])
@login_required('/profile')
@csrf_protect
def profile():
    db = get_db()
    user = accounts.get_user(db, g.scope.user_id)
    if user is None:
        g.scope.sign_out('user_id', 'username')
        return redirect(url_for('storefront.login'))
    errors = []
    if request.method == 'POST':
        action = request.form.get('action')
        try:
            if action == 'update_profile':
                accounts.update_profile(db, g.scope, request.form)
                message = 'Profile updated successfully!'
            elif action == 'change_password':
                accounts.change_password(
                    db, g.scope, 'user', g.scope.user_id, request.form,
                    current_app.config['MIN_PASSWORD_LENGTH'], current_app.config['MAX_PASSWORD_LENGTH'],
                )
                message = 'Password changed successfully.'
            else:
                return jsonify({'success': False, 'message': 'Invalid action'}), 400
        except ValidationError as e:
            errors = e.errors
        else:
            flash(message, 'success')
            return redirect(url_for('storefront.profile'))
    return render_template('storefront/profile.html', user=user, errors=errors, form=request.form)


# ---------- CATALOG ----------

@bp.route('/products')
def products():
    db = get_db()
    per_page = current_app.config['PRODUCTS_PER_PAGE']
    page = max(1, clean_int(request.args.get('page'), 1))
    filters = {
        'category': request.args.get('category') or None,
        'search': clean_text(request.args.get('search')) or None,
        'min_price': request.args.get('min_price'),
        'max_price': request.args.get('max_price'),
        'sort': request.args.get('sort', 'newest'),
    }
    rows, total = catalog.list_products(db, page=page, per_page=per_page, **filters)
    current_category = catalog.get_category(db, filters['category']) if filters['category'] else None
    return render_template(
        'storefront/products.html',
        products=rows, total=total, page=page, pages=_pages(total, per_page),
        filters=filters, categories=catalog.list_categories(db), current_category=current_category,
    )


@bp.route('/products/<slug>', methods=['GET', 'POST'])
@csrf_protect
def product_detail(slug):
    db = get_db()
    product = catalog.get_product(db, slug)
    if product is None:
        if request.method == 'POST':
            return jsonify({'success': False, 'message': 'Product not found'}), 404
        return redirect(url_for('storefront.products'))

    if request.method == 'POST':
        return _add_to_cart(db)

    catalog.record_view(db, product['product_id'])
    in_wishlist = False
    if g.scope.is_authenticated:
        in_wishlist = any(w['product_id'] == product['product_id'] for w in catalog.get_wishlist(db, g.scope.user_id))
    return render_template(
        'storefront/product_detail.html',
        product=product, related=catalog.related_products(db, product), in_wishlist=in_wishlist,
    )


def _add_to_cart(db):
    if not g.scope.is_authenticated:
        return jsonify({'success': False, 'message': 'Please login to add items to cart'}), 401
    if request.form.get('action') != 'add_to_cart':
        return jsonify({'success': False, 'message': 'Invalid action'}), 400
    variant_id = clean_int(request.form.get('variant_id'))
    quantity = clean_int(request.form.get('quantity'), 1)
    if variant_id <= 0:
        return jsonify({'success': False, 'message': 'Please select a size and color'})
    ok, message = cart.add_to_cart(db, g.scope.user_id, variant_id, quantity)
    return jsonify({'success': ok, 'message': message, 'cart_count': cart.cart_count(db, g.scope.user_id)})


# ---------- CART ----------

@bp.route('/cart', methods=['GET', 'POST'])
@login_required('/cart')
@csrf_protect
def view_cart():
    db = get_db()
    user_id = g.scope.user_id
    if request.method == 'POST':
        action = request.form.get('action')
        cart_id = clean_int(request.form.get('cart_id'))
        if action == 'update_quantity':
            ok, message = cart.update_quantity(db, user_id, cart_id, clean_int(request.form.get('quantity'), 1))
        elif action == 'remove_item':
            ok = cart.remove_item(db, user_id, cart_id)
            message = 'Item removed from cart' if ok else 'Item not found'
        else:
            return jsonify({'success': False, 'message': 'Invalid action'}), 400
        lines = cart.load_cart(db, user_id)
        summary = cart.summarize(lines)
        return jsonify({
            'success': ok,
            'message': message,
            'cart_count': summary['total_items'],
            'subtotal': str(summary['subtotal']),
        })

    lines = cart.load_cart(db, user_id)
    return render_template('storefront/cart.html', lines=lines, summary=cart.summarize(lines))


# ---------- CHECKOUT ----------

@bp.route('/checkout', methods=['GET', 'POST'])
@login_required('/checkout')
@csrf_protect
def checkout_page():
    db = get_db()
    user_id = g.scope.user_id
    if not cart.load_cart(db, user_id):
        flash('Your cart is empty.', 'error')
        return redirect(url_for('storefront.view_cart'))
    rates = checkout.active_shipping_rates(db)
    errors = []

    if request.method == 'POST':
        try:
            details = checkout.parse_checkout_form(request.form, rates, current_app.config['PAYMENT_METHODS'])
            placed = checkout.place_order(db, g.scope, details, current_app.config['ORDER_NUMBER_ATTEMPTS'])
        except ValidationError as e:
            errors = e.errors
        except EmptyCartError:
            flash('Your cart is empty.', 'error')
            return redirect(url_for('storefront.view_cart'))
        except OutOfStockError:
            flash(OUT_OF_STOCK_MESSAGE, 'error')
            return redirect(url_for('storefront.view_cart'))
        except (StoreError, SQLAlchemyError):
            # already logged inside place_order
            errors = [checkout.GENERIC_ERROR]
        else:
            flash(f'Order placed successfully! Your order number is {placed.order_number}.', 'success')
            return redirect(url_for('storefront.order_confirmation', order=placed.order_number))

    lines = cart.load_cart(db, user_id)
    if request.method == 'GET' and any(not line['in_stock'] for line in lines):
        flash(OUT_OF_STOCK_MESSAGE, 'error')
        return redirect(url_for('storefront.view_cart'))
    return render_template(
        'storefront/checkout.html',
        lines=lines, summary=cart.summarize(lines), rates=rates,
        payment_methods=current_app.config['PAYMENT_METHODS'],
        errors=errors, form=request.form,
    )


@bp.route('/order-confirmation')
@login_required()
def order_confirmation():
    db = get_db()
    order = orders.get_order_by_number(db, request.args.get('order', ''))
    if order is None or order['user_id'] != g.scope.user_id:
        return redirect(url_for('storefront.index'))
    return render_template(
        'storefront/order_confirmation.html',
        order=order,
        items=orders.order_items(db, order['order_id']),
        transaction=orders.order_transaction(db, order['order_id']),
    )


@bp.route('/orders')
@login_required('/orders')
def order_history():
    db = get_db()
    per_page = current_app.config['ORDERS_PER_PAGE']
    page = max(1, clean_int(request.args.get('page'), 1))
    rows, total = orders.list_user_orders(db, g.scope.user_id, page, per_page)
    return render_template('storefront/orders.html', orders=rows, page=page, pages=_pages(total, per_page))


# ---------- WISHLIST ----------

@bp.route('/wishlist')
@login_required('/wishlist')
def wishlist():
    return render_template('storefront/wishlist.html', items=catalog.get_wishlist(get_db(), g.scope.user_id))


@bp.route('/wishlist/add', methods=['POST'])
@login_required('/wishlist')
@csrf_protect
def wishlist_add():
    ok, message = catalog.add_to_wishlist(get_db(), g.scope.user_id, clean_int(request.form.get('product_id')))
    flash(message, 'success' if ok else 'error')
    return redirect(_safe_next(request.form.get('redirect') or url_for('storefront.wishlist')))


@bp.route('/wishlist/remove', methods=['POST'])
@login_required('/wishlist')
@csrf_protect
def wishlist_remove():
    removed = catalog.remove_from_wishlist(get_db(), g.scope.user_id, clean_int(request.form.get('product_id')))
    flash('Removed from wishlist.' if removed else 'Item not found in your wishlist.', 'info')
    return redirect(url_for('storefront.wishlist'))
