from fastapi.responses import JSONResponse


def success_response(data=None, status=200):
    return JSONResponse(status_code=status, content=data if data is not None else {"ok": True})


def error_response(message, status=400, code=None, data=None):
    content = {
        "ok": False,
        "error": message,
        "code": code,
    }
    if data:
        content.update(data)
    return JSONResponse(status_code=status, content=content)
