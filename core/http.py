from flask import jsonify

def ok(payload=None, status=200):
    return jsonify(payload if payload is not None else {}), status

def error(code, status=400, **extra):
    body = {'error': code}
    body.update({k: v for k, v in extra.items() if v is not None})
    return jsonify(body), status

def error_from_exception(exc):
    return jsonify(exc.to_dict()), exc.status_code
