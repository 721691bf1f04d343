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

"""Errors raised by the mailer.

Every failure coming out of the OpenPGP engine is re-raised as one of these,
chained to the original so ``__cause__`` still carries the engine's error.

>>> err = EncryptionError('Could not encrypt message: boom', code=117)
>>> err.code
117
>>> isinstance(NoSigningKeyError('no key'), NoIdentityError)
True
"""


class GPGMailerError(Exception):
    """Base class for all mailer errors."""

    def __init__(self, message: str, code: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class KeyImportError(GPGMailerError):
    pass


class KeyExportError(GPGMailerError):
    pass


class EncryptionError(GPGMailerError):
    pass


class DecryptionError(GPGMailerError):
    pass


class SigningError(GPGMailerError):
    pass


class VerificationError(GPGMailerError):
    pass


class NoIdentityError(GPGMailerError):
    """The operation needs a server key and none is configured."""


class NoSigningKeyError(NoIdentityError):
    pass


class InvalidConfigurationError(GPGMailerError):
    """An option override was rejected by the engine."""


class UnknownOptionError(GPGMailerError, LookupError):
    pass
