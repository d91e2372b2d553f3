from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Set, Tuple
from app.schema import Contact

class ContactStore:
    """In-memory contacts, owned by a caller and linked to that caller's campaigns."""

    def __init__(self):
        self.contacts: Dict[Tuple[str, int], Contact] = {}
        self.campaigns: Dict[Tuple[str, int], Set[int]] = {}

    def add(self, caller_id: str, contact: Contact, campaign_ids: Iterable[int] = ()) -> Contact:
        self.contacts[(caller_id, contact.id)] = contact
        for cid in campaign_ids:
            self.campaigns.setdefault((caller_id, cid), set()).add(contact.id)
        return contact

    def find_many(self, caller_id: str, ids: Iterable[int], campaign_id: Optional[int] = None) -> List[Contact]:
        """Contacts among `ids` that belong to the caller (and to the campaign, when given)."""
        allowed = self.campaigns.get((caller_id, campaign_id), set()) if campaign_id is not None else None
        found = []
        for i in ids:
            c = self.contacts.get((caller_id, i))
            if c is None or (allowed is not None and i not in allowed):
                continue
            found.append(c)
        return found

    def clear(self): self.contacts.clear(); self.campaigns.clear()

_store: ContactStore | None = None

def get_contact_store() -> ContactStore:
    global _store
    if _store is None:
        _store = ContactStore()
    return _store
