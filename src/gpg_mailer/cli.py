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

"""Scriptable OpenPGP email using ``gpgme-tool``.

You can use ``gpg-agent`` for passphrase caching if the server key requires
a passphrase (it better!).  Example usage would be to install
``gpg-agent``, and then run::

  $ export GPG_TTY=`tty`
  $ eval $(gpg-agent --daemon)

in your shell before invoking this script.  See ``gpg-agent(1)`` for
more details.
"""

import argparse
import codecs
import logging
import os
import sys
from configparser import ConfigParser
from typing import List, Optional

from . import __version__
from .crypt import Engine, get_options
from .email import EncodedMIMEText, attach_root, header_from_text
from .exceptions import GPGMailerError
from .mailer import GPGMailer
from .transport import SMTPTransport, StreamTransport

log = logging.getLogger(__name__)

MODES = ['send', 'unencrypted', 'force-unencrypted']


def read_file(
    filename: Optional[str] = None, encoding: str = 'us-ascii'
) -> str:
    if filename == '-':
        return sys.stdin.read()
    if filename:
        with codecs.open(filename, 'r', encoding) as f:
            return f.read()
    raise ValueError('neither filename nor descriptor given for reading')


def get_parser() -> argparse.ArgumentParser:
    doc_lines = __doc__.splitlines()
    parser = argparse.ArgumentParser(
        prog='gpg-mailer',
        description=doc_lines[0],
        epilog='\n'.join(doc_lines[1:]).strip(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        '-v',
        '--version',
        action='version',
        version='%(prog)s {}'.format(__version__),
    )
    parser.add_argument(
        '-e',
        '--encoding',
        metavar='ENCODING',
        default='utf-8',
        help='encoding for input files',
    )
    parser.add_argument(
        '-H',
        '--header-file',
        metavar='FILE',
        required=True,
        help='file containing email header',
    )
    parser.add_argument(
        '-B',
        '--body-file',
        metavar='FILE',
        required=True,
        help='file containing email body',
    )
    recipient = parser.add_mutually_exclusive_group()
    recipient.add_argument(
        '-f',
        '--fingerprint',
        metavar='FPR',
        help='fingerprint of the recipient key',
    )
    recipient.add_argument(
        '-r',
        '--recipient-key',
        metavar='FILE',
        help='file containing the armored recipient public key',
    )
    parser.add_argument(
        '-k',
        '--server-key',
        metavar='FILE',
        help='file containing the armored private key to sign with',
    )
    parser.add_argument(
        '-m',
        '--mode',
        default='send',
        choices=MODES,
        help='send encrypted (default), or signed but unencrypted',
    )
    parser.add_argument(
        '-c',
        '--config',
        metavar='FILE',
        default=os.path.expanduser(
            os.path.join('~', '.config', 'smtplib.conf')
        ),
        help='config file with [smtp] and [gpg] sections',
    )
    parser.add_argument(
        '--output',
        action='store_const',
        const=True,
        help="don't mail the generated message, print it to stdout instead",
    )
    parser.add_argument(
        '-V',
        '--verbose',
        default=0,
        action='count',
        help='increment verbosity',
    )
    return parser


def main(argv: Optional[List[str]] = None, engine_factory=Engine) -> int:
    parser = get_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        package_log = logging.getLogger('gpg_mailer')
        package_log.setLevel(
            max(logging.DEBUG, package_log.level - 10 * args.verbose)
        )

    config = ConfigParser()
    config.read(args.config)

    if args.output:
        transport = StreamTransport(sys.stdout)
    else:
        transport = SMTPTransport.from_config(config)

    header_text = read_file(filename=args.header_file, encoding=args.encoding)
    body_text = read_file(filename=args.body_file, encoding=args.encoding)
    message = attach_root(
        header_from_text(header_text), EncodedMIMEText(body_text)
    )

    try:
        server_key = ''
        if args.server_key:
            server_key = read_file(args.server_key, encoding='us-ascii')
        mailer = GPGMailer(
            transport,
            get_options(config),
            server_key,
            engine_factory=engine_factory,
        )

        if args.mode == 'send':
            fingerprint = args.fingerprint
            if args.recipient_key:
                fingerprint = mailer.import_key(
                    read_file(args.recipient_key, encoding='us-ascii')
                )
            if not fingerprint:
                parser.error('sending encrypted mail needs -f or -r')
            mailer.send(message, fingerprint)
        else:
            mailer.send_unencrypted(
                message, force=args.mode == 'force-unencrypted'
            )
    except GPGMailerError as err:
        log.error('%s', err)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
