from typing import Dict, Iterable, List, Optional, Tuple

from docvault.schemas.documents import BackendRef, Document


class DocumentRegistry:
    """In-memory registry of documents and the backends holding them.

    A document is registered together with its first BackendRef and its
    identity is not changed afterwards.
    """

    def __init__(self):
        self._documents: Dict[str, Document] = {}
        self._refs: Dict[str, Dict[str, BackendRef]] = {}

    def record_ref(self, document: Document, ref: BackendRef) -> bool:
        """Record a confirmed backend write.

        Returns:
            True if this registered the document
        """
        created = document.id not in self._documents
        if created:
            self._documents[document.id] = document
        self._refs.setdefault(document.id, {})[ref.backend_name] = ref
        return created

    def get(self, document_id: str) -> Optional[Document]:
        return self._documents.get(document_id)

    def refs(self, document_id: str) -> List[BackendRef]:
        return list(self._refs.get(document_id, {}).values())

    def ref_for(self, document_id: str, backend_name: str) -> Optional[BackendRef]:
        return self._refs.get(document_id, {}).get(backend_name)

    def list(self, transaction_id: Optional[str] = None) -> List[Document]:
        documents = sorted(self._documents.values(), key=lambda d: (d.created_at, d.id))
        if transaction_id is None:
            return documents
        return [d for d in documents if d.transaction_id == transaction_id]

    def remove(self, document_id: str) -> Optional[Document]:
        self._refs.pop(document_id, None)
        return self._documents.pop(document_id, None)

    def entries(self) -> List[Tuple[Document, List[BackendRef]]]:
        """Registered documents with their refs, oldest first."""
        return [(document, self.refs(document.id)) for document in self.list()]

    def restore(self, entries: Iterable[Tuple[Document, List[BackendRef]]]) -> int:
        """Load a stored snapshot, keeping documents already registered here."""
        restored = 0
        for document, refs in entries:
            if document.id in self._documents:
                continue
            self._documents[document.id] = document
            self._refs[document.id] = {ref.backend_name: ref for ref in refs}
            restored += 1
        return restored

    def __contains__(self, document_id: str) -> bool:
        return document_id in self._documents

    def __len__(self) -> int:
        return len(self._documents)
