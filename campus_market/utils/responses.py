from flask import jsonify

from campus_market.db import db


def ok(data=None, code=200, message=None):
    body = {"status": "success", "data": data or {}}
    if message:
        body["message"] = message
    return jsonify(body), code


def err(msg, code=400, **extra):
    return jsonify({"status": "error", "message": msg, **extra}), code


def commit_or_rollback():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
