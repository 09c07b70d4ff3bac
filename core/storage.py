import re
import uuid
import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from core.config import Config
from core.errors import ConfigurationError, LinkVaultError

_client = None

class StorageError(LinkVaultError):
    status_code = 502
    code = "storage_error"

def safe_name(name):
    name = re.sub(r"\s+", "-", (name or "").strip().lower())
    return re.sub(r"[^a-z0-9._-]", "", name) or "file"

def new_file_key(file_name, prefix="uploads"):
    return f"{prefix}/{uuid.uuid4().hex}-{safe_name(file_name)}"

def get_client():
    global _client
    storage = Config.STORAGE
    if not storage.configured:
        raise ConfigurationError(storage.missing(), hint="Set the R2_* (or legacy FILE_*) storage variables.")
    if _client is None:
        _client = boto3.client(
            "s3",
            endpoint_url=storage.endpoint,
            aws_access_key_id=storage.access_key_id,
            aws_secret_access_key=storage.secret_access_key,
            region_name=storage.region,
            config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
    return _client

def reset_client():
    global _client
    _client = None

def _presign(client_method, file_key, ttl, **params):
    logger = structlog.get_logger()
    params.update({"Bucket": Config.STORAGE.bucket, "Key": file_key})
    try:
        return get_client().generate_presigned_url(ClientMethod=client_method, Params=params, ExpiresIn=ttl)
    except (BotoCoreError, ClientError) as e:
        logger.error("storage_presign_failed", key=file_key, method=client_method, error=str(e))
        raise StorageError(f"Could not sign storage URL for {file_key}")

def get_download_url(file_key, ttl=None):
    return _presign("get_object", file_key, ttl or Config.DOWNLOAD_URL_TTL_SECONDS)

def get_upload_url(file_key, content_type=None, ttl=None):
    extra = {"ContentType": content_type} if content_type else {}
    return _presign("put_object", file_key, ttl or Config.UPLOAD_URL_TTL_SECONDS, **extra)

def public_url(file_key):
    base = Config.STORAGE.public_base
    if not base:
        return None
    return f"{base}/{file_key}"

def check_bucket():
    """Reachability check: a zero-key listing of the configured bucket."""
    bucket = Config.STORAGE.bucket
    try:
        get_client().list_objects_v2(Bucket=bucket, MaxKeys=0)
    except (BotoCoreError, ClientError) as e:
        structlog.get_logger().error("storage_bucket_unreachable", bucket=bucket, error=str(e))
        raise StorageError(f"Bucket {bucket} is not reachable", details=str(e))
    return bucket
