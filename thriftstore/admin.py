"""
back office routes, mounted under /admin
"""

import logging
import math

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

from . import accounts, catalog, orders, reports
from .activity import distinct_actions, distinct_entities, list_activity, log_activity
from .db import get_db
from .errors import InvalidStatusTransition, OrderNotFoundError, ValidationError
from .order_status import OrderStatus, add_tracking, allowed_next, update_status
from .security import clean_int, clean_text
from .sessions import admin_required, csrf_protect, super_admin_required

logger = logging.getLogger(__name__)

bp = Blueprint('admin', __name__, url_prefix='/admin', template_folder='templates')


def _pages(total, per_page):
    return max(1, math.ceil(total / per_page))


def _page():
    return max(1, clean_int(request.args.get('page'), 1))


def _ack(success, message, status=200):
    return jsonify({'success': success, 'message': message}), status


# ---------- AUTH ----------

@bp.route('/login', methods=['GET', 'POST'])
@csrf_protect
def login():
    if g.scope.is_admin:
        return redirect(url_for('admin.dashboard'))
    errors = []
    if request.method == 'POST':
        db = get_db()
        try:
            admin = accounts.authenticate_admin(
                db, request.form.get('username'), request.form.get('password', ''), g.scope.ip_address,
                current_app.config['MAX_LOGIN_ATTEMPTS'], current_app.config['LOGIN_TIMEOUT_MINUTES'],
            )
        except ValidationError as e:
            errors = e.errors
        else:
            g.scope.sign_in_admin(admin['admin_id'], admin['username'], admin['role'])
            log_activity(db, g.scope, 'admin_login', 'admin', admin['admin_id'])
            return redirect(url_for('admin.dashboard'))
    return render_template('admin/login.html', errors=errors, username=request.form.get('username', ''))


@bp.route('/logout', methods=['POST'])
@csrf_protect
def logout():
    if g.scope.is_admin:
        log_activity(get_db(), g.scope, 'admin_logout', 'admin', g.scope.admin_id)
    g.scope.sign_out('admin_id', 'admin_username', 'admin_role')
    flash('You have been logged out.', 'info')
    return redirect(url_for('admin.login'))


@bp.route('/register', methods=['GET', 'POST'])
@admin_required
@super_admin_required
@csrf_protect
def register():
    errors = []
    if request.method == 'POST':
        try:
            accounts.create_admin(
                get_db(), g.scope, request.form,
                current_app.config['MIN_PASSWORD_LENGTH'], current_app.config['MAX_PASSWORD_LENGTH'],
            )
        except ValidationError as e:
            errors = e.errors
        else:
            flash('Admin account created successfully.', 'success')
            return redirect(url_for('admin.dashboard'))
    return render_template('admin/register.html', errors=errors, form=request.form)


@bp.route('/profile', methods=['GET', 'POST'])
@admin_required
@csrf_protect
def profile():
    db = get_db()
    errors = []
    if request.method == 'POST':
        action = request.form.get('action')
        try:
            if action == 'update_profile':
                updated = accounts.update_admin_profile(db, g.scope, request.form)
                g.scope.session['admin_username'] = updated['username']
                message = 'Profile updated successfully'
            elif action == 'change_password':
                accounts.change_password(
                    db, g.scope, 'admin', g.scope.admin_id, request.form,
                    current_app.config['MIN_PASSWORD_LENGTH'], current_app.config['MAX_PASSWORD_LENGTH'],
                )
                message = 'Password changed successfully'
            else:
                return _ack(False, 'Invalid action', 400)
        except ValidationError as e:
            errors = e.errors
        else:
            flash(message, 'success')
            return redirect(url_for('admin.profile'))
    return render_template('admin/profile.html', admin=accounts.get_admin(db, g.scope.admin_id),
                           errors=errors, form=request.form)


# ---------- DASHBOARD ----------

@bp.route('/')
@admin_required
def dashboard():
    data = reports.dashboard(
        get_db(), request.args.get('period', 'today'),
        low_stock_threshold=current_app.config['LOW_STOCK_THRESHOLD'],
    )
    return render_template('admin/dashboard.html', **data)


# ---------- ORDERS ----------

@bp.route('/orders', methods=['GET', 'POST'])
@admin_required
@csrf_protect
def order_list():
    db = get_db()
    if request.method == 'POST':
        return _order_action(db)

    per_page = current_app.config['ADMIN_PER_PAGE']
    filters = {
        'status': request.args.get('status') if OrderStatus.parse(request.args.get('status')) else None,
        'search': clean_text(request.args.get('search')) or None,
        'date_from': request.args.get('date_from') or None,
        'date_to': request.args.get('date_to') or None,
    }
    page = _page()
    rows, total = orders.search_orders(db, page=page, per_page=per_page, **filters)
    return render_template(
        'admin/orders.html',
        orders=rows, total=total, page=page, pages=_pages(total, per_page),
        filters=filters, statuses=list(OrderStatus), pending=orders.pending_count(db),
    )


def _order_action(db):
    action = request.form.get('action')
    order_id = clean_int(request.form.get('order_id'))
    try:
        if action == 'update_status':
            status = update_status(db, g.scope, order_id, request.form.get('status'))
            return _ack(True, f'Order status updated to {status.value}')
        if action == 'add_tracking':
            add_tracking(db, g.scope, order_id, request.form.get('tracking_number'))
            return _ack(True, 'Tracking number added successfully')
    except ValidationError as e:
        return _ack(False, e.errors[0])
    except OrderNotFoundError:
        return _ack(False, 'Order not found', 404)
    except InvalidStatusTransition as e:
        return _ack(False, str(e))
    except SQLAlchemyError:
        logger.exception('Order action %s failed for order %s', action, order_id)
        return _ack(False, 'An error occurred. Please try again.', 500)
    return _ack(False, 'Invalid action', 400)


@bp.route('/orders/<int:order_id>')
@admin_required
def order_detail(order_id):
    db = get_db()
    order = orders.get_order(db, order_id)
    if order is None:
        flash('Order not found.', 'error')
        return redirect(url_for('admin.order_list'))
    return render_template(
        'admin/order_detail.html',
        order=order,
        items=orders.order_items(db, order_id),
        transaction=orders.order_transaction(db, order_id),
        next_statuses=allowed_next(OrderStatus(order['status'])),
    )


# ---------- USERS ----------

@bp.route('/users', methods=['GET', 'POST'])
@admin_required
@csrf_protect
def user_list():
    db = get_db()
    if request.method == 'POST':
        action = request.form.get('action')
        user_id = clean_int(request.form.get('user_id'))
        if user_id and user_id == g.scope.user_id and action in ('toggle_status', 'toggle_ban', 'delete'):
            return _ack(False, 'You cannot modify your own account from here.')
        if action == 'toggle_status':
            return _ack(*accounts.toggle_user_status(db, g.scope, user_id))
        if action == 'toggle_ban':
            return _ack(*accounts.toggle_user_ban(db, g.scope, user_id, request.form.get('ban_reason')))
        if action == 'delete':
            return _ack(*accounts.delete_user(db, g.scope, user_id))
        if action == 'update':
            return _ack(*accounts.update_user(db, g.scope, user_id, request.form))
        return _ack(False, 'Invalid action', 400)

    per_page = current_app.config['ADMIN_PER_PAGE']
    search = clean_text(request.args.get('search')) or None
    status = request.args.get('status') or None
    page = _page()
    rows, total = accounts.list_users(db, search, status, page, per_page)
    return render_template(
        'admin/users.html',
        users=rows, total=total, page=page, pages=_pages(total, per_page), search=search, status=status,
    )


# ---------- PRODUCTS ----------

@bp.route('/products', methods=['GET', 'POST'])
@admin_required
@csrf_protect
def product_list():
    db = get_db()
    errors = []
    if request.method == 'POST':
        action = request.form.get('action')
        if action == 'update_variant':
            return _ack(*catalog.update_variant(
                db, g.scope, clean_int(request.form.get('variant_id')),
                request.form.get('stock_quantity'), request.form.get('price_adjustment'),
            ))
        if action == 'toggle_active':
            return _ack(*catalog.toggle_product_active(db, g.scope, clean_int(request.form.get('product_id'))))
        if action != 'create':
            return _ack(False, 'Invalid action', 400)
        try:
            fields, variants = catalog.parse_product_form(request.form)
            catalog.create_product(db, g.scope, fields, variants)
        except ValidationError as e:
            errors = e.errors
        except SQLAlchemyError:
            logger.exception('Product creation failed')
            errors = ['An error occurred while creating the product. Please try again.']
        else:
            flash('Product created successfully!', 'success')
            return redirect(url_for('admin.product_list'))

    per_page = current_app.config['ADMIN_PER_PAGE']
    filters = {
        'search': clean_text(request.args.get('search')) or None,
        'category_id': clean_int(request.args.get('category')) or None,
        'status': request.args.get('status', 'active'),
        'stock': request.args.get('stock') or None,
    }
    page = _page()
    rows, total = catalog.admin_list_products(db, page=page, per_page=per_page, **filters)
    return render_template(
        'admin/products.html',
        products=rows, total=total, page=page, pages=_pages(total, per_page),
        filters=filters, categories=catalog.list_categories(db), errors=errors, form=request.form,
    )


@bp.route('/products/<int:product_id>/edit', methods=['GET', 'POST'])
@admin_required
@csrf_protect
def product_edit(product_id):
    db = get_db()
    product = catalog.get_product_by_id(db, product_id)
    if product is None:
        flash('Product not found.', 'error')
        return redirect(url_for('admin.product_list'))
    errors = []
    if request.method == 'POST':
        action = request.form.get('action')
        if action == 'add_variant':
            ok, message = catalog.add_variant(db, g.scope, product_id, request.form)
            flash(message, 'success' if ok else 'error')
            return redirect(url_for('admin.product_edit', product_id=product_id))
        if action != 'update':
            return _ack(False, 'Invalid action', 400)
        try:
            catalog.update_product(db, g.scope, product_id, request.form)
        except ValidationError as e:
            errors = e.errors
        else:
            flash('Product updated successfully.', 'success')
            return redirect(url_for('admin.product_edit', product_id=product_id))
    return render_template(
        'admin/product_edit.html',
        product=product, variants=catalog.product_variants(db, product_id, active_only=False),
        categories=catalog.list_categories(db), errors=errors, form=request.form,
    )


# ---------- LOGS & STATS ----------

@bp.route('/logs')
@admin_required
def logs():
    db = get_db()
    per_page = current_app.config['LOGS_PER_PAGE']
    filters = {
        'action': clean_text(request.args.get('action')) or None,
        'entity_type': request.args.get('entity_type') or None,
        'date_from': request.args.get('date_from') or None,
        'date_to': request.args.get('date_to') or None,
    }
    page = _page()
    rows, total = list_activity(db, page=page, per_page=per_page, **filters)
    return render_template(
        'admin/logs.html',
        logs=rows, total=total, page=page, pages=_pages(total, per_page), filters=filters,
        actions=distinct_actions(db), entity_types=distinct_entities(db),
    )


@bp.route('/statistics')
@admin_required
def statistics():
    data = reports.statistics(
        get_db(), request.args.get('period', 'month'),
        request.args.get('start_date') or None, request.args.get('end_date') or None,
    )
    return render_template('admin/statistics.html', **data)
