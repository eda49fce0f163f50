AUDIO_CONTENT_TYPE = "audio/mpeg"
AUDIO_EXTENSION = ".mp3"

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]
DRIVE_METADATA_FIELDS = "id,name,parents,mimeType,size"

GCS_API_URL = "https://storage.googleapis.com/storage/v1"
GCS_UPLOAD_URL = "https://storage.googleapis.com/upload/storage/v1"
GCS_PUBLIC_URL = "https://storage.googleapis.com"
GCS_SCOPES = ["https://www.googleapis.com/auth/devstorage.read_write"]

# Resumable upload chunks must be a multiple of this size, except the last one.
GCS_CHUNK_GRANULARITY = 256 * 1024
