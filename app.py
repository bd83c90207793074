#!/usr/bin/env python3
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo
import click

from flask import Flask, render_template, redirect, url_for, session, request, abort, flash, get_flashed_messages
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager, UserMixin, login_user, login_required, logout_user, current_user
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import generate_password_hash, check_password_hash
from sqlalchemy.exc import SQLAlchemyError

def env_bool(name, default=False):
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")

def env_int(name, default):
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default

def env_log_level(name, default="INFO"):
    """ログレベル名を解決。不正な値は default にする"""
    value = os.getenv(name, default).strip().upper()
    if not isinstance(logging.getLevelName(value), int):
        return default
    return value

app = Flask(__name__)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_host=1, x_proto=1)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY") or secrets.token_urlsafe(32)

# ---------- DB: default to SQLite for local simplicity; prod should set DATABASE_URL to PostgreSQL ----------
DATABASE_URL = os.getenv("DATABASE_URL") or "sqlite:///daily_report.db"
app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["SESSION_COOKIE_SECURE"] = env_bool("SESSION_COOKIE_SECURE", False)

app.logger.setLevel(env_log_level("LOG_LEVEL"))

LOCAL_TZ = ZoneInfo(os.getenv("TIMEZONE", "Asia/Tokyo"))
# 一覧画面の1ページあたりの表示件数
REPORTS_PER_PAGE = max(1, env_int("REPORTS_PER_PAGE", 15))

REPORT_DATETIME_FORMAT = "%Y-%m-%dT%H:%M"
REPORT_TITLE_MAX_LENGTH = 255
MAX_REPORT_ID = 2**63 - 1
REPORT_FORM_KEYS = ("report_date", "title", "content", "start_time", "finish_time")

MSG_REGISTERED = "登録が完了しました。"
MSG_UPDATED = "更新が完了しました。"
MSG_NOT_FOUND = "お探しのページは見つかりませんでした。"
MSG_SAVE_FAILED = "日報の保存に失敗しました。時間をおいて再度お試しください。"

db = SQLAlchemy(app)

WEEKDAY_JA = ["月", "火", "水", "木", "金", "土", "日"]

login_manager = LoginManager(app)
login_manager.login_view = "login"
login_manager.login_message = "ログインしてください。"

class Employee(db.Model, UserMixin):
    __tablename__ = "employees"
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(100), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    admin_flag = db.Column(db.Boolean, nullable=False, default=False)
    delete_flag = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    reports = db.relationship("Report", backref=db.backref("employee", lazy=True), lazy=True)

    def set_password(self, password):
        """パスワードをハッシュ化して設定"""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """パスワードを検証"""
        return check_password_hash(self.password_hash, password)

class Report(db.Model):
    __tablename__ = "reports"
    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    report_date = db.Column(db.Date, nullable=False)
    title = db.Column(db.String(REPORT_TITLE_MAX_LENGTH), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    # 業務の開始・終了はローカル時刻のまま保持する
    start_time = db.Column(db.DateTime, nullable=False)
    finish_time = db.Column(db.DateTime, nullable=False)

    @property
    def worked_seconds(self):
        if not self.start_time or not self.finish_time:
            return 0
        return max(0, int((self.finish_time - self.start_time).total_seconds()))

@dataclass(frozen=True)
class SessionIdentity:
    """リクエスト単位で取り出したログイン中の従業員情報"""
    id: int
    code: str
    name: str

def session_identity():
    if not current_user.is_authenticated:
        return None
    return SessionIdentity(id=current_user.id, code=current_user.code, name=current_user.name)

def today_local():
    return datetime.now(LOCAL_TZ).date()

def ensure_aware(dt):
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt

def parse_report_date(value):
    """YYYY-MM-DD 形式の日付を解析。空欄は None"""
    value = (value or "").strip()
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ValueError(f"日付の形式が不正です: {value}") from e

def parse_local_datetime(value, field_label="日時"):
    """datetime-local から受け取った文字列を解析。空欄は None"""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return datetime.strptime(value, REPORT_DATETIME_FORMAT)
    except ValueError as e:
        raise ValueError(f"{field_label}の形式が不正です: {value}") from e

def format_local_form_value(dt):
    """datetime-local入力用の文字列を生成"""
    if not dt:
        return ""
    return dt.strftime(REPORT_DATETIME_FORMAT)

def read_report_form(default_date=None):
    """送信された日報フォームを読み取る。

    戻り値は (fields, raw, errors, reported)。
    fields は Report に設定する値、raw は再表示用の入力値そのまま、
    errors は形式エラー、reported は形式エラーを報告済みの項目名。
    日付が空欄で default_date が指定されていればその日付を使う。
    """
    raw = {key: request.form.get(key, "") for key in REPORT_FORM_KEYS}
    fields = {"title": raw["title"].strip(), "content": raw["content"]}
    errors = []
    reported = set()

    try:
        fields["report_date"] = parse_report_date(raw["report_date"]) or default_date
    except ValueError as e:
        fields["report_date"] = None
        errors.append(str(e))
        reported.add("report_date")

    for key, label in (("start_time", "開始時刻"), ("finish_time", "終了時刻")):
        try:
            fields[key] = parse_local_datetime(raw[key], label)
        except ValueError as e:
            fields[key] = None
            errors.append(str(e))
            reported.add(key)

    return fields, raw, errors, reported

def validate_report(fields, reported=()):
    """日報の入力値を検証し、エラーメッセージのリストを返す"""
    errors = []
    if fields.get("report_date") is None and "report_date" not in reported:
        errors.append("日付を入力してください。")

    title = fields.get("title") or ""
    if not title.strip():
        errors.append("タイトルを入力してください。")
    elif len(title) > REPORT_TITLE_MAX_LENGTH:
        errors.append(f"タイトルは{REPORT_TITLE_MAX_LENGTH}文字以内で入力してください。")

    if not (fields.get("content") or "").strip():
        errors.append("内容を入力してください。")

    start_time = fields.get("start_time")
    finish_time = fields.get("finish_time")
    if start_time is None and "start_time" not in reported:
        errors.append("開始時刻を入力してください。")
    if finish_time is None and "finish_time" not in reported:
        errors.append("終了時刻を入力してください。")
    if start_time and finish_time and finish_time < start_time:
        errors.append("終了時刻は開始時刻以降を指定してください。")
    return errors

def report_form_values(report=None, report_date=None):
    """フォーム表示用の初期値"""
    if report is None:
        return {
            "report_date": report_date.isoformat() if report_date else "",
            "title": "",
            "content": "",
            "start_time": "",
            "finish_time": "",
        }
    return {
        "report_date": report.report_date.isoformat() if report.report_date else "",
        "title": report.title or "",
        "content": report.content or "",
        "start_time": format_local_form_value(report.start_time),
        "finish_time": format_local_form_value(report.finish_time),
    }

# ---------- 日報データの取得・保存 ----------

def get_reports_per_page(page):
    offset = REPORTS_PER_PAGE * (page - 1)
    return Report.query.order_by(Report.id.desc()).offset(offset).limit(REPORTS_PER_PAGE).all()

def count_reports():
    return Report.query.count()

def find_report(report_id):
    # INTEGER 列に収まらない id は存在しない日報として扱う
    if not 0 < report_id <= MAX_REPORT_ID:
        return None
    return db.session.get(Report, report_id)

def create_report(employee_id, fields):
    now = datetime.now(timezone.utc)
    report = Report(
        employee_id=employee_id,
        report_date=fields["report_date"],
        title=fields["title"],
        content=fields["content"],
        start_time=fields["start_time"],
        finish_time=fields["finish_time"],
        created_at=now,
        updated_at=now,
    )
    db.session.add(report)
    db.session.commit()
    return report

def update_report(report, fields):
    report.report_date = fields["report_date"]
    report.title = fields["title"]
    report.content = fields["content"]
    report.start_time = fields["start_time"]
    report.finish_time = fields["finish_time"]
    report.updated_at = datetime.now(timezone.utc)
    db.session.commit()
    return report

# ---------- リクエスト補助 ----------

def ensure_csrf():
    # トークンはセッション単位で発行し、各フォームの表示ではそれを使い回す
    tok = session.get("csrf_token")
    if not tok:
        tok = secrets.token_urlsafe(32)
        session["csrf_token"] = tok
    return tok

def verify_csrf():
    form_tok = request.form.get("csrf_token", "")
    ok = form_tok and session.get("csrf_token") and secrets.compare_digest(form_tok, session["csrf_token"])
    if not ok:
        abort(400, "CSRF token missing or invalid")

def get_page():
    try:
        page = int(request.args.get("page", "1"))
    except ValueError:
        page = 1
    return max(1, page)

def _get_own_report_or_404(report_id, identity):
    """日報が存在しない場合も作成者でない場合も同じく 404 にする"""
    report = find_report(report_id)
    if report is None or identity is None or report.employee_id != identity.id:
        abort(404)
    return report

@login_manager.user_loader
def load_user(user_id):
    employee = db.session.get(Employee, int(user_id))
    if employee is None or employee.delete_flag:
        return None
    return employee

@app.template_filter("fmt_dt")
def fmt_dt(dt):
    if not dt:
        return "-"
    local = ensure_aware(dt).astimezone(LOCAL_TZ)
    weekday = WEEKDAY_JA[local.weekday()]
    return f"{local.year}年{local.month:02d}月{local.day:02d}日({weekday}) {local.hour:02d}:{local.minute:02d}:{local.second:02d}"

@app.template_filter("fmt_local_dt")
def fmt_local_dt(dt):
    if not dt:
        return "-"
    return f"{dt.month:02d}月{dt.day:02d}日({WEEKDAY_JA[dt.weekday()]}) {dt.hour:02d}:{dt.minute:02d}"

@app.template_filter("fmt_hms")
def fmt_hms(seconds):
    seconds = int(seconds or 0)
    h = seconds // 3600
    m = (seconds % 3600) // 60
    return f"{h:02d}:{m:02d}"

@app.template_filter("fmt_date_ja")
def fmt_date_ja(value, full=False):
    if not value:
        return "-"
    weekday = WEEKDAY_JA[value.weekday()]
    if full:
        return f"{value.year}年{value.month:02d}月{value.day:02d}日({weekday})"
    return f"{value.month:02d}月{value.day:02d}日({weekday})"

@app.errorhandler(400)
def bad_request(e):
    return render_template("errors/error.html", message=e.description), 400

@app.errorhandler(404)
def not_found(e):
    return render_template("errors/error.html", message=MSG_NOT_FOUND), 404

# ---------- 認証 ----------

@app.route("/login", methods=["GET", "POST"])
def login():
    ensure_csrf()
    if request.method == "POST":
        verify_csrf()
        code = request.form.get("code", "").strip()
        password = request.form.get("password", "")

        if not code or not password:
            flash("社員番号とパスワードを入力してください。", "error")
            return redirect(url_for("login"))

        employee = Employee.query.filter_by(code=code, delete_flag=False).first()
        if employee and employee.check_password(password):
            login_user(employee)
            app.logger.info("Employee %s logged in", employee.id)
            flash("ログインしました。", "success")
            return redirect(url_for("index"))
        else:
            app.logger.info("Failed login attempt for code %r", code)
            flash("社員番号またはパスワードが正しくありません。", "error")
            return redirect(url_for("login"))

    return render_template("login.html", csrf_token=session["csrf_token"])

@app.route("/logout")
@login_required
def logout():
    logout_user()
    flash("ログアウトしました。", "success")
    return redirect(url_for("login"))

# ---------- 日報 ----------

@app.route("/")
@app.route("/reports")
def index():
    """一覧画面を表示する"""
    page = get_page()
    reports = get_reports_per_page(page)
    reports_count = count_reports()

    # セッションのフラッシュメッセージはここで取り出し、以降は表示しない
    flush = get_flashed_messages(with_categories=True)

    return render_template(
        "reports/index.html",
        reports=reports,
        reports_count=reports_count,
        page=page,
        max_row=REPORTS_PER_PAGE,
        flush=flush,
    )

@app.route("/reports/new")
def entry_new():
    """新規登録画面を表示する"""
    return render_template(
        "reports/new.html",
        csrf_token=ensure_csrf(),
        form=report_form_values(report_date=today_local()),
        errors=[],
    )

@app.route("/reports", methods=["POST"])
@login_required
def create():
    """新規登録を行う"""
    verify_csrf()
    identity = session_identity()

    fields, raw, errors, reported = read_report_form(default_date=today_local())
    errors += validate_report(fields, reported)

    if not errors:
        try:
            report = create_report(identity.id, fields)
        except SQLAlchemyError:
            db.session.rollback()
            app.logger.exception("Failed to create report for employee %s", identity.id)
            errors = [MSG_SAVE_FAILED]
        else:
            app.logger.info("Report %s created by employee %s", report.id, identity.id)
            flash(MSG_REGISTERED, "success")
            return redirect(url_for("index"))

    return render_template(
        "reports/new.html",
        csrf_token=ensure_csrf(),
        form=raw,
        errors=errors,
    )

@app.route("/reports/<int:report_id>")
def show(report_id):
    """詳細画面を表示する"""
    report = find_report(report_id)
    if report is None:
        abort(404)
    return render_template("reports/show.html", report=report)

@app.route("/reports/<int:report_id>/edit")
@login_required
def edit(report_id):
    """編集画面を表示する"""
    identity = session_identity()
    report = _get_own_report_or_404(report_id, identity)
    return render_template(
        "reports/edit.html",
        csrf_token=ensure_csrf(),
        report=report,
        form=report_form_values(report),
        errors=[],
    )

@app.route("/reports/<int:report_id>/update", methods=["POST"])
@login_required
def update(report_id):
    """更新を行う"""
    verify_csrf()
    identity = session_identity()
    report = _get_own_report_or_404(report_id, identity)

    fields, raw, errors, reported = read_report_form()
    errors += validate_report(fields, reported)

    if not errors:
        try:
            update_report(report, fields)
        except SQLAlchemyError:
            db.session.rollback()
            app.logger.exception("Failed to update report %s", report_id)
            errors = [MSG_SAVE_FAILED]
        else:
            app.logger.info("Report %s updated by employee %s", report_id, identity.id)
            flash(MSG_UPDATED, "success")
            return redirect(url_for("index"))

    return render_template(
        "reports/edit.html",
        csrf_token=ensure_csrf(),
        report=report,
        form=raw,
        errors=errors,
    )

@app.route("/healthz")
def healthz():
    return "ok"

@app.context_processor
def inject_globals():
    return {"current_user": current_user}

@app.cli.command("init-db")
def init_db_command():
    """Create all database tables."""
    db.create_all()
    click.echo("Initialized the database.")

@app.cli.command("create-employee")
@click.option("--code", required=True, help="社員番号（ログインID）")
@click.option("--name", required=True, help="氏名")
@click.option("--password", required=True, help="パスワード")
@click.option("--admin", is_flag=True, default=False, help="管理者として作成")
def create_employee_command(code, name, password, admin):
    """Create an employee account."""
    if Employee.query.filter_by(code=code).first():
        raise click.ClickException(f"社員番号 {code} は既に使用されています。")
    employee = Employee(code=code, name=name, admin_flag=admin)
    employee.set_password(password)
    db.session.add(employee)
    db.session.commit()
    click.echo(f"Created employee {code} (id={employee.id}).")

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8000")), debug=True)
