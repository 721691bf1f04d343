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

"""Deliver finished messages.

A transport is anything with a ``send(message)`` method.  Delivery errors are
not translated; they reach the caller as raised by ``smtplib`` or the OS.
"""

import logging
import os
import secrets
import sys
import tempfile
import time
from configparser import NoOptionError, NoSectionError
from email.message import Message
from smtplib import SMTP, SMTP_PORT
from typing import (
    TYPE_CHECKING,
    Callable,
    List,
    Optional,
    Protocol,
    TextIO,
    Tuple,
)

if TYPE_CHECKING:
    from configparser import ConfigParser

log = logging.getLogger(__name__)


class Transport(Protocol):
    def send(self, message: Message) -> None:
        ...


def get_smtp_params(
    config: 'ConfigParser',
) -> Tuple[
    Optional[str], Optional[int], Optional[bool], Optional[str], Optional[str]
]:
    r"""Retrieve SMTP paramters from a config file.

    >>> from configparser import ConfigParser
    >>> config = ConfigParser()
    >>> config.read_string(
    ...     '\n'.join(
    ...         [
    ...             '[smtp]',
    ...             'host: smtp.mail.uu.edu',
    ...             'port: 587',
    ...             'starttls: yes',
    ...             'username: rincewind',
    ...             'password: 7ugg@g3',
    ...         ]
    ...     )
    ... )
    >>> get_smtp_params(config)
    ('smtp.mail.uu.edu', 587, True, 'rincewind', '7ugg@g3')

    >>> config = ConfigParser()
    >>> get_smtp_params(ConfigParser())
    (None, None, None, None, None)
    """
    try:
        host = config.get('smtp', 'host')
    except NoSectionError:
        return (None, None, None, None, None)
    except NoOptionError:
        host = None

    try:
        port = config.getint('smtp', 'port')
    except NoOptionError:
        port = None

    try:
        starttls = config.getboolean('smtp', 'starttls')
    except NoOptionError:
        starttls = None

    try:
        username = config.get('smtp', 'username')
    except NoOptionError:
        username = None

    try:
        password = config.get('smtp', 'password')
    except NoOptionError:
        password = None
    return (host, port, starttls, username, password)


def get_smtp(
    host: Optional[str] = None,
    port: Optional[int] = None,
    starttls: Optional[bool] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> SMTP:
    """Connect to an SMTP host using the given parameters.

    >>> from smtplib import SMTPAuthenticationError
    >>> try:  # doctest: +SKIP
    ...     smtp = get_smtp(
    ...         host='smtp.gmail.com',
    ...         port=587,
    ...         starttls=True,
    ...         username='rincewind@uu.edu',
    ...         password='7ugg@g3',
    ...     )
    ... except SMTPAuthenticationError:
    ...     print('that was not a real account')
    that was not a real account
    """
    if host is None:
        host = 'localhost'
    if port is None:
        port = SMTP_PORT
    if username and not starttls:
        raise ValueError(
            'sending passwords in the clear is unsafe! Use STARTTLS.'
        )
    log.info('connect to SMTP server at %s:%d', host, port)
    smtp = SMTP(host=host, port=port)
    smtp.ehlo()
    if starttls:
        smtp.starttls()
    if username and password:
        smtp.login(username, password)
    return smtp


def mail(message: Message, smtp: SMTP) -> None:
    """Send an email ``Message`` instance over an open connection."""
    log.info('send message %s -> %s', message['from'], message['to'])
    smtp.send_message(msg=message)


class SMTPTransport:
    """Send each message over a fresh SMTP connection."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        starttls: Optional[bool] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        if username and not starttls:
            raise ValueError(
                'sending passwords in the clear is unsafe! Use STARTTLS.'
            )
        self.host = host
        self.port = port
        self.starttls = starttls
        self.username = username
        self.password = password

    @classmethod
    def from_config(cls, config: 'ConfigParser') -> 'SMTPTransport':
        return cls(*get_smtp_params(config))

    def send(self, message: Message) -> None:
        smtp = get_smtp(
            self.host, self.port, self.starttls, self.username, self.password
        )
        try:
            mail(message, smtp)
        finally:
            log.info('disconnect from SMTP server')
            smtp.quit()


def _default_filename(transport: 'FileTransport') -> str:
    return f"gpg-mailer_{int(time.time())}_{secrets.token_hex(4)}.eml"


class FileTransport:
    """Write each message to its own ``.eml`` file under ``path``."""

    def __init__(
        self,
        path: Optional[str] = None,
        callback: Optional[Callable[['FileTransport'], str]] = None,
    ) -> None:
        self.path = path or tempfile.gettempdir()
        self.callback = callback or _default_filename
        self.last_file: Optional[str] = None

    def send(self, message: Message) -> None:
        filename = os.path.join(self.path, self.callback(self))
        with open(filename, 'w', encoding='utf-8') as f:
            f.write(message.as_string())
        log.info('wrote message for %s to %s', message['to'], filename)
        self.last_file = filename


class InMemoryTransport:
    """Keep sent messages around, mostly for tests."""

    def __init__(self) -> None:
        self.messages: List[Message] = []

    @property
    def last_message(self) -> Optional[Message]:
        if self.messages:
            return self.messages[-1]
        return None

    def send(self, message: Message) -> None:
        self.messages.append(message)


class StreamTransport:
    """Print messages instead of mailing them."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stdout

    def send(self, message: Message) -> None:
        self.stream.write(message.as_string())
        self.stream.write('\n')
        self.stream.flush()
