"""
Virement Interac manuel: instructions au client + collecte des preuves de virement.

Pas de confirmation passerelle: la commande est créée en 'pending_verification'
et la preuve est vérifiée manuellement par le marchand.
"""
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from epicerie import config
from epicerie.errors import ValidationError
from epicerie.utils.money import format_amount, quantize, to_decimal

logger = logging.getLogger(__name__)

# Type MIME -> extensions acceptées
ALLOWED_TYPES: Dict[str, Tuple[str, ...]] = {
    "image/jpeg": (".jpg", ".jpeg"),
    "image/jpg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "application/pdf": (".pdf",),
}


@dataclass(frozen=True)
class TransferInstructions:
    """Coordonnées du marchand et montant exact à virer (lecture seule)."""
    email: str
    phone: str
    business_name: str
    amount: Decimal
    reference_message: str

    @classmethod
    def for_merchant(cls, merchant: Dict[str, Any], amount: Any, order_ref: str) -> "TransferInstructions":
        return cls(
            email=str(merchant.get("interac_email") or merchant.get("email") or ""),
            phone=str(merchant.get("interac_phone") or merchant.get("phone") or ""),
            business_name=str(merchant.get("business_name") or merchant.get("name") or ""),
            amount=quantize(to_decimal(amount)),
            reference_message=f"Commande {order_ref}",
        )

    def payee_identifiers(self) -> Dict[str, str]:
        return {"email": self.email, "phone": self.phone, "businessName": self.business_name}


@dataclass(frozen=True)
class ProofFile:
    name: str
    size: int
    mime_type: str
    storage_ref: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "size": self.size, "mimeType": self.mime_type, "storageRef": self.storage_ref}


@dataclass(frozen=True)
class FileRejection:
    name: str
    reason: str
    message: str


@dataclass(frozen=True)
class ProofOfTransfer:
    reference: str
    files: Tuple[ProofFile, ...]
    amount: Decimal
    payee_identifiers: Dict[str, str] = field(default_factory=dict)
    uploaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "files": [f.to_payload() for f in self.files],
            "amount": format_amount(self.amount),
            "payeeIdentifiers": dict(self.payee_identifiers),
            "uploadedAt": self.uploaded_at.isoformat(),
        }


# module epicerie.payments.interac
def new_proof_reference() -> str:
    return f"proof_{uuid.uuid4().hex}"

def validate_proof_file(name: str, size: int, mime_type: str, max_bytes: int = config.PROOF_MAX_BYTES) -> ProofFile:
    """
    Valide un fichier de preuve, dans cet ordre:
    - type: MIME autorisé ET extension correspondante (sinon unsupported_type)
    - taille: > 0 (sinon empty_file) et <= max_bytes (sinon file_too_large)
    """
    name = (name or "").strip()
    mime = (mime_type or "").strip().lower()
    ext = os.path.splitext(name)[1].lower()

    allowed_ext = ALLOWED_TYPES.get(mime)
    if not allowed_ext or ext not in allowed_ext:
        raise ValidationError(
            f"Le format de {name or 'fichier'} n'est pas supporté (JPG, PNG, PDF)",
            "unsupported_type",
            fields={"file": name},
        )
    size = int(size or 0)
    if size <= 0:
        raise ValidationError(f"Le fichier {name} est vide", "empty_file", fields={"file": name})
    if size > max_bytes:
        raise ValidationError(
            f"Le fichier {name} dépasse la limite de {max_bytes // (1024 * 1024)}MB",
            "file_too_large",
            fields={"file": name},
        )
    return ProofFile(name=name, size=size, mime_type=mime)


class ProofCollector:
    """
    Collecte 1..max_files preuves pour un virement.
    - Chaque fichier invalide est rejeté individuellement; les fichiers acceptés sont conservés.
    - submit() fige le tout en ProofOfTransfer et génère la référence proof_<hex>.
    """

    def __init__(
        self,
        instructions: TransferInstructions,
        max_files: int = config.PROOF_MAX_FILES,
        max_bytes: int = config.PROOF_MAX_BYTES,
    ):
        self.instructions = instructions
        self.max_files = max_files
        self.max_bytes = max_bytes
        self._files: List[ProofFile] = []

    @property
    def files(self) -> Tuple[ProofFile, ...]:
        return tuple(self._files)

    def check(self, name: str, size: int, mime_type: str) -> ProofFile:
        """Valide un fichier et la capacité restante sans l'ajouter (avant un envoi réseau)."""
        proof = validate_proof_file(name, size, mime_type, self.max_bytes)
        if len(self._files) >= self.max_files:
            raise ValidationError(
                f"Maximum {self.max_files} fichiers autorisés",
                "too_many_files",
                fields={"file": proof.name},
            )
        return proof

    def add(self, name: str, size: int, mime_type: str, storage_ref: Optional[str] = None) -> ProofFile:
        proof = self.check(name, size, mime_type)
        if storage_ref:
            proof = ProofFile(proof.name, proof.size, proof.mime_type, storage_ref)
        self._files.append(proof)
        return proof

    def add_many(self, files: Iterable[Dict[str, Any]]) -> Tuple[List[ProofFile], List[FileRejection]]:
        """Ajoute un lot [{name, size, mimeType, storageRef?}], sans interrompre sur un rejet."""
        accepted: List[ProofFile] = []
        rejected: List[FileRejection] = []
        for f in files or []:
            name = str(f.get("name") or "")
            try:
                accepted.append(self.add(name, f.get("size") or 0, f.get("mimeType") or f.get("mime_type") or "", f.get("storageRef")))
            except ValidationError as e:
                rejected.append(FileRejection(name=name, reason=e.reason, message=e.message))
        return accepted, rejected

    def remove(self, name: str) -> bool:
        for i, f in enumerate(self._files):
            if f.name == name:
                del self._files[i]
                return True
        return False

    def submit(self) -> ProofOfTransfer:
        if not self._files:
            raise ValidationError("Veuillez ajouter au moins une preuve de virement", "no_proof_files")
        proof = ProofOfTransfer(
            reference=new_proof_reference(),
            files=tuple(self._files),
            amount=self.instructions.amount,
            payee_identifiers=self.instructions.payee_identifiers(),
        )
        logger.info("payments.interac proof submitted ref=%s files=%s", proof.reference, len(proof.files))
        return proof
