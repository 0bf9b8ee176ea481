"""
Accès au stockage de fichiers pour la feature 'payments' (preuves de virement Interac).
"""
import logging
import re
import uuid

from epicerie import config
from epicerie.errors import StorageError

logger = logging.getLogger(__name__)


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", name or "fichier")[:120]


# module epicerie.payments.repository
class ProofStorage:
    def __init__(self, client, bucket: str = config.PROOF_BUCKET):
        self.client = client
        self.bucket = bucket

    def upload(self, owner_id: str, name: str, content: bytes, mime_type: str) -> str:
        """
        Dépose un fichier de preuve dans le bucket Supabase Storage.
        Retour: chemin de l'objet (storageRef), ex: "<owner>/<uuid>_<nom>".
        """
        path = f"{owner_id}/{uuid.uuid4().hex}_{_safe_name(name)}"
        try:
            self.client.storage.from_(self.bucket).upload(path, content, {"content-type": mime_type})
        except Exception:
            logger.exception("payments.repository.upload failed owner=%s name=%s", owner_id, name)
            raise StorageError(f"Envoi du fichier {name} impossible")
        return path
