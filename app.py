import hmac
import io
import logging
import os

from flask import Flask, request, jsonify, send_file

from blob_store import BlobNotFound, DEFAULT_BUCKET, LocalBlobStore, StorageError
from cipher_errors import EmojiCipherError, WrongPasswordOrCorruptData
from emoji_cipher import encrypt_message, decrypt_message, decrypt_message_with_admin_key
from file_crypto import (
    FileToken,
    decrypt_file,
    decrypt_file_with_admin_key,
    encrypt_file,
    file_token_to_meta,
    is_file_token,
    make_file_token,
    parse_file_token,
)

MAX_MESSAGE_CHARS = 1000
MAX_FILE_BYTES = 10 * 1024 * 1024

logger = logging.getLogger("emoji-cipher.app")

app = Flask(__name__)
app.config.update(
    # multipart overhead on top of the file itself
    MAX_CONTENT_LENGTH=MAX_FILE_BYTES + 64 * 1024,
    ADMIN_RSA_PUBLIC_KEY_B64=os.environ.get("ADMIN_RSA_PUBLIC_KEY_B64"),
    ADMIN_API_KEY=os.environ.get("ADMIN_API_KEY"),
    STORAGE_DIR=os.environ.get("STORAGE_DIR", "storage"),
    STORAGE_BUCKET=os.environ.get("STORAGE_BUCKET", DEFAULT_BUCKET),
)


def _store() -> LocalBlobStore:
    return LocalBlobStore(app.config["STORAGE_DIR"], app.config["STORAGE_BUCKET"])


def _json_body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _text_field(data, key: str) -> str:
    # non-string JSON values count as missing
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _clean_token(value: str) -> str:
    return value.strip().replace("\n", "").replace("\r", "")


@app.errorhandler(WrongPasswordOrCorruptData)
def _wrong_password(e):
    return jsonify({"error": str(e)}), 401


@app.errorhandler(EmojiCipherError)
def _cipher_error(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(BlobNotFound)
def _not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(StorageError)
def _storage_error(e):
    logger.error("storage failure: %s", e)
    return jsonify({"error": str(e)}), 502


@app.errorhandler(413)
def _too_large(e):
    return jsonify({"error": "File is too large. Maximum allowed size is 10 MB."}), 413


@app.post('/encrypt')
def api_encrypt():
    data = _json_body()
    msg = _text_field(data, "message")
    pw = _text_field(data, "passphrase")
    if not msg.strip():
        return jsonify({"error": "message is required"}), 400
    if not pw.strip():
        return jsonify({"error": "passphrase is required"}), 400
    if len(msg) > MAX_MESSAGE_CHARS:
        return jsonify({"error": f"message is limited to {MAX_MESSAGE_CHARS} characters"}), 400
    token = encrypt_message(msg, pw, app.config["ADMIN_RSA_PUBLIC_KEY_B64"])
    return jsonify({"encrypted_text": token})


@app.post('/decrypt')
def api_decrypt():
    data = _json_body()
    token = _clean_token(_text_field(data, "encrypted_text"))
    pw = _text_field(data, "passphrase")
    if not token:
        return jsonify({"error": "encrypted_text is required"}), 400
    if not pw.strip():
        return jsonify({"error": "passphrase is required"}), 400
    return jsonify({"original_message": decrypt_message(token, pw)})


@app.post('/files/encrypt')
def api_file_encrypt():
    upload = request.files.get("file")
    pw = request.form.get("passphrase", "")
    if upload is None:
        return jsonify({"error": "file is required"}), 400
    if not pw.strip():
        return jsonify({"error": "passphrase is required"}), 400
    content = upload.read()
    if len(content) > MAX_FILE_BYTES:
        return _too_large(None)

    cipher, envelope = encrypt_file(
        content, upload.filename or "", upload.mimetype, pw, app.config["ADMIN_RSA_PUBLIC_KEY_B64"]
    )
    store = _store()
    object_id = store.put(cipher, upload.filename)
    ref = FileToken(envelope=envelope, object_id=object_id, bucket=store.bucket)
    store.put_meta(object_id, file_token_to_meta(ref))
    return jsonify({"token": make_file_token(ref), "id": object_id, "version": envelope.version})


def _send_plain(plain: bytes, ref: FileToken):
    return send_file(
        io.BytesIO(plain),
        mimetype=ref.envelope.mime,
        as_attachment=True,
        download_name=ref.envelope.name or "decrypted-file",
    )


@app.post('/files/decrypt')
def api_file_decrypt():
    data = _json_body()
    token = _clean_token(_text_field(data, "token"))
    pw = _text_field(data, "passphrase")
    if not token:
        return jsonify({"error": "Paste the emoji token."}), 400
    if not pw.strip():
        return jsonify({"error": "passphrase is required"}), 400
    ref = parse_file_token(token)
    plain = decrypt_file(_store().get(ref.object_id), ref.envelope, pw)
    return _send_plain(plain, ref)


@app.post('/admin/decrypt')
def api_admin_decrypt():
    data = _json_body()
    token = _clean_token(_text_field(data, "encrypted_text") or _text_field(data, "token"))
    private_key = _text_field(data, "private_key")
    if not token:
        return jsonify({"error": "encrypted_text or token is required"}), 400
    if not private_key.strip():
        return jsonify({"error": "private_key is required"}), 400

    if is_file_token(token):
        ref = parse_file_token(token)
        plain = decrypt_file_with_admin_key(_store().get(ref.object_id), ref.envelope, private_key)
        logger.info("admin recovered file %s", ref.object_id)
        return _send_plain(plain, ref)

    message = decrypt_message_with_admin_key(token, private_key)
    logger.info("admin recovered message")
    return jsonify({"original_message": message})


@app.get('/admin/files')
def api_admin_files():
    expected = app.config.get("ADMIN_API_KEY")
    if not expected:
        return jsonify({"error": "not found"}), 404
    given = request.headers.get("X-Admin-Key", "")
    if not hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8")):
        return jsonify({"error": "forbidden"}), 403
    try:
        limit = max(1, min(int(request.args.get("limit", 100)), 1000))
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400

    store = _store()
    items = []
    for item in store.list_objects(limit):
        items.append({
            "id": item.id,
            "name": item.name,
            "size": item.size,
            "updated_at": item.updated_at,
            "meta": store.get_meta(item.id),
        })
    return jsonify({"items": items})


if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=False)
