#!/usr/bin/env python3
"""
Contact and asset directories consulted by the escalation engine
"""

import logging
from typing import List, Dict, Optional, Protocol, Tuple

from checkin_models import Contact

logger = logging.getLogger(__name__)

AssetBeneficiaries = Tuple[str, List[str]]


class ContactDirectory(Protocol):
    def owner_contact(self, user_id: str) -> Optional[Contact]:
        ...

    def family_contacts(self, user_id: str) -> List[Contact]:
        ...

    def professional_contacts(self, user_id: str) -> List[Contact]:
        ...


class AssetDirectory(Protocol):
    def assets_with_beneficiaries(self, user_id: str) -> List[AssetBeneficiaries]:
        ...


class ConfigDirectory:
    """Directory backed by the 'directory' section of the config file

    Layout per user id::

        {"owner": {...}, "family": [{...}], "professional": [{...}],
         "assets": [{"id": "...", "beneficiaries": ["contact-id", ...]}]}
    """

    def __init__(self, directory: Dict):
        self.users = {}
        for user_id, entry in directory.items():
            owner = entry.get('owner')
            self.users[user_id] = {
                'owner': Contact(**owner) if owner else None,
                'family': [Contact(**c) for c in entry.get('family', [])],
                'professional': [Contact(**c) for c in entry.get('professional', [])],
                'assets': [(a['id'], list(a.get('beneficiaries', []))) for a in entry.get('assets', [])],
            }
        logger.info(f"Directory loaded for {len(self.users)} user(s)")

    def _entry(self, user_id: str) -> Dict:
        entry = self.users.get(user_id)
        if entry is None:
            logger.warning(f"No directory entry for user {user_id}")
            return {'owner': None, 'family': [], 'professional': [], 'assets': []}
        return entry

    def owner_contact(self, user_id: str) -> Optional[Contact]:
        return self._entry(user_id)['owner']

    def family_contacts(self, user_id: str) -> List[Contact]:
        return list(self._entry(user_id)['family'])

    def professional_contacts(self, user_id: str) -> List[Contact]:
        return list(self._entry(user_id)['professional'])

    def assets_with_beneficiaries(self, user_id: str) -> List[AssetBeneficiaries]:
        return list(self._entry(user_id)['assets'])
