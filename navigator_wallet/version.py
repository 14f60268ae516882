"""Navigator Wallet Meta information.
   Navigator Wallet protects custodial wallet private keys at rest
   using PIN-bound envelope encryption.
"""
__title__ = 'navigator_wallet'
__description__ = (
   'Navigator Wallet protects custodial wallet private keys at rest '
   'using PIN-bound envelope encryption.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-wallet'
