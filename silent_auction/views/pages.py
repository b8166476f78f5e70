from flask import Blueprint, redirect, render_template, request, send_from_directory, session, url_for

from silent_auction import auctions, db
from silent_auction.artwork import upload_folder
from silent_auction.errors import DatabaseUnavailable, NotFound
from silent_auction.roles import SCHOOL_ADMIN, SITE_ADMIN, TEACHER, admin_page_required, current_user

bp = Blueprint('pages', __name__)


@bp.route('/')
def index():
    search = request.args.get('search')
    try:
        with db.transaction() as c:
            result = auctions.list_auctions(c, current_user(), {'search': search}, 50, 0)
    except DatabaseUnavailable:
        return "Database connection failed", 500
    return render_template('index.html', auctions=result['auctions'], search=search or '')


@bp.route('/auction/<int:auction_id>')
def auction_detail(auction_id):
    try:
        with db.transaction() as c:
            auction = auctions.get_auction(c, auction_id, current_user())
    except DatabaseUnavailable:
        return "Database connection failed", 500
    except NotFound:
        return "Auction not found", 404
    return render_template('auction-detail.html', auction=auction)


@bp.route('/dashboard')
def dashboard():
    if 'user_id' not in session:
        return redirect(url_for('pages.login'))
    return render_template('dashboard.html', user=current_user())


@bp.route('/teacher')
def teacher_dashboard():
    if session.get('role') not in (TEACHER, SCHOOL_ADMIN, SITE_ADMIN):
        return redirect(url_for('pages.index'))
    return render_template('teacher.html', user=current_user())


@bp.route('/admin')
@admin_page_required
def admin_dashboard():
    return render_template('admin/dashboard.html', user=current_user())


@bp.route('/login')
def login():
    return render_template('login.html')


@bp.route('/register')
def register():
    return render_template('register.html', token=request.args.get('token', ''))


@bp.route('/reset-password')
def reset_password():
    return render_template('reset-password.html', token=request.args.get('token', ''))


@bp.route('/uploads/<path:filename>')
def uploaded_file(filename):
    return send_from_directory(upload_folder(), filename)
