"""
Tax token reward bot.

Harvests transfer-fee tax withheld by a Token-2022 mint, swaps it into the
reward token and distributes the proceeds to holders once per interval.
"""

__version__ = "0.1.0"
