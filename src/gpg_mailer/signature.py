# Copyright (C) 2022 Jesse P. Johnson <jpj6652@gmail.com>
# Copyright (C) 2012 W. Trevor King <wking@tremily.us>
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

"""Signatures reported by ``gpgme-tool`` after a ``VERIFY``.

See the `GPGME manual`_ for the meaning of the fields.

.. GPGME manual: http://www.gnupg.org/documentation/manuals/gpgme/Verify.html
"""

import re
import time
from typing import Dict, Generator, Optional
from xml.etree import ElementTree

# gpg_err_code() strips the error source from the upper bits
ERROR_CODE_MASK = 0xFFFF

_SOURCE_SUFFIX = re.compile(r'\s*<[^<>]*>$')


class Signature:
    """Python version of ``gpgme_signature_t``.

    >>> s = Signature(fingerprint='B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3')
    >>> s.set_status(0)
    >>> s.is_valid()
    True
    >>> s.set_status(8)
    >>> s.status
    'bad signature'
    >>> s.is_valid()
    False

    Flag fields are stored as dictionaries.

    >>> s.set_summary(0x3)
    >>> sorted(k for k, v in s.summary.items() if v)
    ['green', 'valid']
    >>> s.set_summary(0x1002)
    >>> sorted(k for k, v in s.summary.items() if v)
    ['TOFU conflict', 'green']
    >>> s.set_summary(0x2024)
    Traceback (most recent call last):
      ...
    ValueError: unknown flags for summary (0x2000)
    """

    _error_enum = {  # GPG_ERR_* in gpg-error.h
        0: 'success',
        1: 'general error',
        8: 'bad signature',
        9: 'no public key',
        58: 'no data',
        94: 'certificate revoked',
        153: 'key expired',
        154: 'signature expired',
    }

    _summary_flags = {  # GPGME_SIGSUM_* in gpgme.h
        0x001: 'valid',
        0x002: 'green',
        0x004: 'red',
        0x008: 'key revoked',
        0x020: 'key expired',
        0x040: 'signature expired',
        0x080: 'key missing',
        0x100: 'CRL missing',
        0x200: 'CRL too old',
        0x400: 'bad policy',
        0x800: 'system error',
        0x1000: 'TOFU conflict',
    }

    _validity_enum = {  # GPGME_VALIDITY_* in gpgme.h
        0: 'unknown',
        1: 'undefined',
        2: 'never',
        3: 'marginal',
        4: 'full',
        5: 'ultimate',
    }

    _hash_algorithm_enum = {  # GPGME_MD_* in gpgme.h
        1: 'MD5',
        2: 'SHA1',
        3: 'RMD160',
        8: 'SHA256',
        9: 'SHA384',
        10: 'SHA512',
        11: 'SHA224',
    }

    def __init__(
        self,
        fingerprint: Optional[str] = None,
        status: Optional[str] = None,
        status_code: Optional[int] = None,
        summary: Optional[Dict[str, bool]] = None,
        timestamp: Optional[int] = None,
        expiration_timestamp: Optional[int] = None,
        validity: Optional[str] = None,
        hash_algorithm: Optional[str] = None,
        public_key_algorithm: Optional[str] = None,
    ) -> None:
        self.fingerprint = fingerprint
        self.status = status
        self.status_code = status_code
        self.summary = summary
        self.timestamp = timestamp
        self.expiration_timestamp = expiration_timestamp
        self.validity = validity
        self.hash_algorithm = hash_algorithm
        self.public_key_algorithm = public_key_algorithm

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.fingerprint} {self.status}>"

    def is_valid(self) -> bool:
        """Whether the engine found a good signature.

        This says nothing about how much the signing key is trusted.
        """
        if self.status_code is not None:
            return self.status_code == 0
        return self.status == 'success'

    def set_summary(self, value: int) -> None:
        if value < 0:
            raise ValueError(f"invalid flags for summary ({value})")
        flags = {}
        for flag, name in self._summary_flags.items():
            flags[name] = bool(flag & value)
            value &= ~flag
        if value:
            raise ValueError('unknown flags for summary (0x{:x})'.format(value))
        self.summary = flags

    def set_status(self, value: int) -> None:
        self.status_code = value & ERROR_CODE_MASK
        self.status = self._error_enum.get(
            self.status_code, f"error {self.status_code}"
        )

    def set_validity(self, value: int) -> None:
        self.validity = self._validity_enum.get(value, 'unknown')

    def set_hash_algorithm(self, value: int) -> None:
        self.hash_algorithm = self._hash_algorithm_enum.get(value, str(value))

    def dumps(self, prefix: str = '') -> str:
        lines = [f"{prefix}{self.fingerprint} signature:"]
        for key in [
            'status',
            'timestamp',
            'expiration_timestamp',
            'validity',
            'public_key_algorithm',
            'hash_algorithm',
        ]:
            value = getattr(self, key)
            if not value:
                continue
            if key.endswith('timestamp'):
                value = time.asctime(time.gmtime(value))
            lines.append(f"  {key.replace('_', ' ')}: {value}")
        return f"\n{prefix}".join(lines)


def _strip_source(text: str) -> str:
    return _SOURCE_SUFFIX.sub('', text).lower()


def verify_result_signatures(
    result: bytes,
) -> Generator['Signature', None, None]:
    r"""Parse the XML returned by ``RESULT`` after a ``VERIFY``.

    >>> result = b'\n'.join(
    ...     [
    ...     b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>',
    ...     b'<gpgme>',
    ...     b'  <verify-result>',
    ...     b'    <signatures>',
    ...     b'      <signature>',
    ...     b'        <summary value="0x0" />',
    ...     b'        <fpr>B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3</fpr>',
    ...     b'        <status value="0x0">Success &lt;Unspecified source&gt;</status>',
    ...     b'        <timestamp unix="1332358207i" />',
    ...     b'        <exp-timestamp unix="0i" />',
    ...     b'        <wrong-key-usage value="0x0" />',
    ...     b'        <pka-trust value="0x0" />',
    ...     b'        <chain-model value="0x0" />',
    ...     b'        <validity value="0x0" />',
    ...     b'        <validity-reason value="0x0">Success &lt;Unspecified source&gt;</validity-reason>',
    ...     b'        <pubkey-algo value="0x1">RSA</pubkey-algo>',
    ...     b'        <hash-algo value="0x2">SHA1</hash-algo>',
    ...     b'      </signature>',
    ...     b'    </signatures>',
    ...     b'  </verify-result>',
    ...     b'</gpgme>',
    ...     b'\x00',
    ...     ]
    ... )
    >>> for s in verify_result_signatures(result):
    ...     print(s.dumps())
    B2EDBE0E771A4B8708DD16A7511AEDA64332B6E3 signature:
      status: success
      timestamp: Wed Mar 21 19:30:07 2012
      validity: unknown
      public key algorithm: RSA
      hash algorithm: SHA1
    """
    tree = ElementTree.fromstring(result.replace(b'\x00', b''))
    for signature in tree.findall('.//signature'):
        sig = Signature()
        for child in signature:
            value = child.get('value')
            if child.tag == 'fpr':
                sig.fingerprint = (child.text or '').strip()
            elif child.tag == 'status':
                if value is not None:
                    sig.set_status(int(value, 16))
                else:
                    sig.status = _strip_source(child.text or '')
            elif child.tag == 'summary':
                sig.set_summary(int(value, 16))
            elif child.tag == 'validity':
                sig.set_validity(int(value, 16))
            elif child.tag == 'hash-algo':
                sig.set_hash_algorithm(int(value, 16))
            elif child.tag == 'pubkey-algo':
                sig.public_key_algorithm = child.text
            elif child.tag in ['timestamp', 'exp-timestamp']:
                stamp = child.get('unix', '0').rstrip('i')
                key = child.tag.replace('exp-', 'expiration_')
                setattr(sig, key, int(stamp))
        yield sig
