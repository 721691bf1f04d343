# -*- coding: utf-8 -*-
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

"""Read and replace message bodies."""

from copy import deepcopy
from email.message import Message
from email.mime.text import MIMEText
from email.parser import Parser
from typing import Optional

ENCODING = 'utf-8'


def header_from_text(text: str) -> Message:
    r"""Simple wrapper for instantiating a ``Message`` from text.

    >>> text = '\n'.join(
    ...     ['From: me@big.edu', 'To: you@big.edu', 'Subject: testing']
    ... )
    >>> header = header_from_text(text=text)
    >>> print(header.as_string())  # doctest: +REPORT_UDIFF
    From: me@big.edu
    To: you@big.edu
    Subject: testing
    <BLANKLINE>
    <BLANKLINE>
    """
    text = text.strip()
    p = Parser()
    return p.parsestr(text, headersonly=True)


def guess_encoding(text: str) -> str:
    r"""
    >>> guess_encoding('hi there')
    'us-ascii'
    >>> guess_encoding('✉')
    'utf-8'
    """
    for encoding in ['us-ascii', ENCODING, 'utf-8']:
        try:
            text.encode(encoding)
        except UnicodeEncodeError:
            pass
        else:
            return encoding
    raise ValueError(text)


class EncodedMIMEText(MIMEText):
    """Wrap ``MIMEText`` with ``guess_encoding`` detection.

    >>> message = EncodedMIMEText('Hello')
    >>> print(message.as_string())  # doctest: +REPORT_UDIFF
    Content-Type: text/plain; charset="us-ascii"
    MIME-Version: 1.0
    Content-Transfer-Encoding: 7bit
    Content-Disposition: inline
    <BLANKLINE>
    Hello
    """

    def __init__(self, body: str, encoding: Optional[str] = None) -> None:
        if encoding is None:
            encoding = guess_encoding(body)
        super().__init__(body, 'plain', encoding)
        self.add_header('Content-Disposition', 'inline')


def attach_root(header: Message, root_part: Message) -> Message:
    r"""Copy headers from ``header`` onto ``root_part``.

    >>> header = header_from_text('From: me@big.edu\n')
    >>> body = EncodedMIMEText('Hello')
    >>> message = attach_root(header, body)
    >>> print(message.as_string())  # doctest: +REPORT_UDIFF
    Content-Type: text/plain; charset="us-ascii"
    MIME-Version: 1.0
    Content-Transfer-Encoding: 7bit
    Content-Disposition: inline
    From: me@big.edu
    <BLANKLINE>
    Hello
    """
    for k, v in header.items():
        root_part[k] = v
    return root_part


def _mime_entity(message: Message) -> str:
    part = deepcopy(message)
    for key in set(k.lower() for k in part.keys()):
        if not key.startswith('content-') and key != 'mime-version':
            del part[key]
    return part.as_string()


def get_body_text(message: Message) -> str:
    r"""Return the body of ``message`` as text.

    A multipart message yields its flattened MIME entity, without the
    routing headers.

    >>> message = EncodedMIMEText('Джон Доу')
    >>> message['To'] = 'John Doe <jdoe@a.gov.ru>'
    >>> get_body_text(message)
    'Джон Доу'
    """
    if message.is_multipart():
        return _mime_entity(message)
    payload = message.get_payload(decode=True)
    if payload is None:
        return ''
    charset = message.get_content_charset() or 'us-ascii'
    try:
        return payload.decode(charset)
    except (LookupError, UnicodeDecodeError):
        return payload.decode(ENCODING, 'replace')


def with_body(message: Message, body: str) -> Message:
    r"""Return a copy of ``message`` with its body replaced by ``body``.

    Routing headers are kept and ``message`` itself is left untouched.

    >>> message = EncodedMIMEText('Hello')
    >>> message['To'] = 'Jack <jack@hill.org>'
    >>> replaced = with_body(message, 'Привет')
    >>> print(replaced.as_string())  # doctest: +REPORT_UDIFF
    MIME-Version: 1.0
    Content-Disposition: inline
    To: Jack <jack@hill.org>
    Content-Type: text/plain; charset="utf-8"
    Content-Transfer-Encoding: base64
    <BLANKLINE>
    0J/RgNC40LLQtdGC
    <BLANKLINE>
    >>> get_body_text(message)
    'Hello'
    """
    copy = deepcopy(message)
    if copy.is_multipart():
        del copy['content-type']
        copy.set_payload(None)
    # clear CTE so set_payload will set it properly for the new encoding
    del copy['content-transfer-encoding']
    copy.set_payload(body, guess_encoding(body))
    return copy
