# Copyright (C) 2022 Jesse P. Johnson <jpj6652@gmail.com>
#
# This file is part of gpg-mailer.
#
# gpg-mailer is free software: you can redistribute it and/or modify it under the
# terms of the GNU General Public License as published by the Free Software
# Foundation, either version 3 of the License, or (at your option) any later
# version.
#
# gpg-mailer is distributed in the hope that it will be useful, but WITHOUT ANY
# WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS FOR
# A PARTICULAR PURPOSE.  See the GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along with
# gpg-mailer.  If not, see <http://www.gnu.org/licenses/>.

"""Keys listed and imported by ``gpgme-tool``."""

import logging
from functools import total_ordering
from typing import Any, Dict, List, Optional
from xml.etree import ElementTree

log = logging.getLogger(__name__)


@total_ordering
class SubKey:
    """The crypographic key portion of an OpenPGP key."""

    def __init__(self, fingerprint: Optional[str] = None) -> None:
        self.fingerprint = fingerprint

    def __repr__(self) -> str:
        if self.fingerprint:
            return f"<{type(self).__name__} {self.fingerprint[-8:]}>"
        return f"<{type(self).__name__}>"

    def __eq__(self, other: object) -> bool:
        if self.fingerprint and isinstance(other, SubKey):
            return self.fingerprint == other.fingerprint
        return id(self) == id(other)

    def __lt__(self, other: 'SubKey') -> bool:
        if self.fingerprint and other.fingerprint:
            return self.fingerprint < other.fingerprint
        return id(self) < id(other)

    def __hash__(self) -> int:
        return hash(self.fingerprint)


class UserID:
    """A user ID bound to a key."""

    def __init__(
        self,
        uid: Optional[str] = None,
        name: Optional[str] = None,
        email: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> None:
        self.uid = uid
        self.name = name
        self.email = email
        self.comment = comment

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class Key:
    """An OpenPGP key as listed by ``KEYLIST``.

    >>> key = Key(subkeys=[SubKey('B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3'),
    ...                    SubKey('DECC812C8795ADD60538B0CD171008BA2F73DE2E')])
    >>> key
    <Key 4332B6E3>
    >>> key.fingerprint
    'B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3'
    >>> key.matches('decc812c8795add60538b0cd171008ba2f73de2e')
    True
    >>> key.matches('171008BA2F73DE2E')
    True
    >>> key.matches('1B6EFC02852A489B8162033CC7C64BB7CA403A7E')
    False
    """

    def __init__(
        self,
        subkeys: Optional[List[SubKey]] = None,
        uids: Optional[List[UserID]] = None,
    ) -> None:
        self.revoked = False
        self.expired = False
        self.disabled = False
        self.invalid = False
        self.can_encrypt = False
        self.can_sign = False
        self.can_certify = False
        self.can_authenticate = False
        self.secret = False
        self.protocol: Optional[str] = None
        self.owner_trust: Optional[str] = None
        self.subkeys = subkeys or []
        self.uids = uids or []

    def __repr__(self) -> str:
        if self.fingerprint:
            return f"<{type(self).__name__} {self.fingerprint[-8:]}>"
        return f"<{type(self).__name__}>"

    @property
    def fingerprint(self) -> Optional[str]:
        if self.subkeys:
            return self.subkeys[0].fingerprint
        return None

    @property
    def usable(self) -> bool:
        return not (self.revoked or self.expired or self.disabled or self.invalid)

    def matches(self, fingerprint: str) -> bool:
        """Whether ``fingerprint`` names this key or one of its subkeys.

        Short and long key IDs match the tail of a subkey fingerprint.
        """
        wanted = fingerprint.upper().replace(' ', '')
        if wanted.startswith('0X'):
            wanted = wanted[2:]
        if not wanted:
            return False
        for subkey in self.subkeys:
            if subkey.fingerprint and subkey.fingerprint.upper().endswith(
                wanted
            ):
                return True
        return False


_BOOLEAN_TAGS = [
    'revoked',
    'expired',
    'disabled',
    'invalid',
    'can-encrypt',
    'can-sign',
    'can-certify',
    'can-authenticate',
    'secret',
]


def _flag(element: ElementTree.Element) -> int:
    value = element.get('value', '0x0')
    return int(value, 16)


def parse_keylist(result: Optional[bytes]) -> List[Key]:
    r"""Parse the XML written by ``KEYLIST``.

    >>> result = b''.join([
    ...     b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>',
    ...     b'<gpgme><keylist-result><key>',
    ...     b'<revoked value="0x0"/><can-encrypt value="0x1"/>',
    ...     b'<can-sign value="0x1"/><secret value="0x0"/>',
    ...     b'<protocol>OpenPGP</protocol>',
    ...     b'<subkeys><subkey><fpr>B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3</fpr>',
    ...     b'</subkey></subkeys>',
    ...     b'<uids><uid><uid>test &lt;test@example.com&gt;</uid>',
    ...     b'<name>test</name><email>test@example.com</email></uid></uids>',
    ...     b'</key></keylist-result></gpgme>\x00',
    ... ])
    >>> keys = parse_keylist(result)
    >>> keys
    [<Key 4332B6E3>]
    >>> keys[0].can_encrypt, keys[0].secret, keys[0].protocol
    (True, False, 'OpenPGP')
    >>> keys[0].uids
    [<UserID test>]
    >>> parse_keylist(None)
    []
    """
    if not result:
        return []
    tree = ElementTree.fromstring(result.replace(b'\x00', b''))
    keys = []
    for element in tree.findall('.//key'):
        key = Key()
        for child in element:
            attribute = child.tag.replace('-', '_')
            if child.tag in _BOOLEAN_TAGS:
                setattr(key, attribute, bool(_flag(child)))
            elif child.tag in ['protocol', 'owner-trust']:
                setattr(key, attribute, child.text)
            elif child.tag == 'subkeys':
                key.subkeys = [
                    SubKey((subkey.findtext('fpr') or '').strip() or None)
                    for subkey in child
                ]
            elif child.tag == 'uids':
                key.uids = [
                    UserID(
                        uid=uid.findtext('uid'),
                        name=uid.findtext('name'),
                        email=uid.findtext('email'),
                        comment=uid.findtext('comment'),
                    )
                    for uid in child
                ]
            else:
                log.debug('ignoring key element %s', child.tag)
        keys.append(key)
    return keys


def parse_import_result(result: Optional[bytes]) -> Dict[str, Any]:
    r"""Summarise the XML returned by ``RESULT`` after an ``IMPORT``.

    >>> result = b''.join([
    ...     b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>',
    ...     b'<gpgme><import-result>',
    ...     b'<considered value="0x1"/><imported value="0x1"/>',
    ...     b'<unchanged value="0x0"/><secret-imported value="0x0"/>',
    ...     b'<secret-unchanged value="0x0"/>',
    ...     b'<imports><import-status>',
    ...     b'<fpr>1B6EFC02852A489B8162033CC7C64BB7CA403A7E</fpr>',
    ...     b'<result value="0x0">Success &lt;Unspecified source&gt;</result>',
    ...     b'<status value="0x1"/>',
    ...     b'</import-status></imports>',
    ...     b'</import-result></gpgme>',
    ... ])
    >>> summary = parse_import_result(result)
    >>> summary['fingerprint']
    '1B6EFC02852A489B8162033CC7C64BB7CA403A7E'
    >>> summary['public_imported'], summary['private_imported']
    (1, 0)
    >>> parse_import_result(b'<gpgme><import-result/></gpgme>')['fingerprint']
    """
    summary: Dict[str, Any] = {
        'fingerprint': None,
        'fingerprints': [],
        'considered': 0,
        'public_imported': 0,
        'public_unchanged': 0,
        'private_imported': 0,
        'private_unchanged': 0,
        'failed': [],
    }
    if not result:
        return summary
    tree = ElementTree.fromstring(result.replace(b'\x00', b''))
    counters = {
        'considered': 'considered',
        'imported': 'public_imported',
        'unchanged': 'public_unchanged',
        'secret-imported': 'private_imported',
        'secret-unchanged': 'private_unchanged',
    }
    for tag, name in counters.items():
        element = tree.find(f'.//import-result/{tag}')
        if element is not None:
            summary[name] = _flag(element)
    for status in tree.findall('.//import-status'):
        fingerprint = (status.findtext('fpr') or '').strip()
        outcome = status.find('result')
        if outcome is not None and _flag(outcome) & 0xFFFF:
            summary['failed'].append((fingerprint, outcome.text))
            continue
        if fingerprint and fingerprint not in summary['fingerprints']:
            summary['fingerprints'].append(fingerprint)
    if summary['fingerprints']:
        summary['fingerprint'] = summary['fingerprints'][0]
    return summary
