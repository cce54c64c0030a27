"""
Sales Service — 金額計算

金額はすべて Decimal の固定小数点で扱い、小数2桁に丸める。
丸めは四捨五入（0.5 は絶対値が大きい方へ）で、銀行丸めは使わない。
明細合計と注文合計で同じ関数を使うことで「明細の和 == 注文合計」を保つ。
"""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_decimal(value: Decimal | int | str | float) -> Decimal:
    # float は str 経由で変換して 2 進誤差を持ち込まない
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(value: Decimal | int | str | float) -> Decimal:
    """小数2桁・四捨五入（half away from zero）に丸める。"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    return round_money(to_decimal(unit_price) * quantity)
