# src/dycore_stepper/butcher.py
"""Butcher tables for explicit, diagonally implicit and additive RK methods.

A Runge-Kutta method with s stages is defined by:

    c_1 | a_11  ...  a_1s
     .  |   .         .
    c_s | a_s1  ...  a_ss
    ----+----------------
        |  b_1  ...  b_s        (solution weights, order q)
        |  d_1  ...  d_s        (optional embedding, order p)

An additive (IMEX) method pairs an explicit table (strictly lower-triangular
``a``) with a diagonally implicit table (lower-triangular ``a``) sharing the
same abscissae ``c``. Stage i then solves

    z_i = y_n + h sum_{j<i} (aE_ij fE_j + aI_ij fI_j) + h aI_ii fI(z_i)

and the step is y_{n+1} = y_n + h sum_j (bE_j fE_j + bI_j fI_j).

This module holds:
- the ButcherTable / AdditiveButcherTable containers with validation,
- the fixed ARS(3,4,3) coefficients used by the hand-coded scheme,
- the registry of integrator-known tables keyed by ARKode table ID,
- custom IMEX presets (ARS family) and explicit RK presets.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from math import sqrt
from typing import Any, Final, Literal

import numpy as np
from numpy.typing import NDArray

from .errors import raise_configuration_error

# =============================================================================
# Errors / messages
# =============================================================================

_A_SQUARE_ERROR_MSG = "Table '{name}': a must be square; got shape {shape}"
_LENGTH_ERROR_MSG = "Table '{name}': {vec} has length {actual}; expected {expected}"
_LOWER_TRIANGULAR_ERROR_MSG = "Table '{name}': a must be lower-triangular"
_ROW_SUM_ERROR_MSG = "Table '{name}': row sums of a do not match c (max diff {diff})"
_ORDER_ERROR_MSG = "Table '{name}': order must be >= 1; got {order}"
_EMBEDDED_ORDER_ERROR_MSG = (
    "Table '{name}': embedded_order is required when d is given"
)
_NOT_EXPLICIT_ERROR_MSG = "Table '{name}' is not explicit (a is not strictly lower)"
_NOT_DIRK_ERROR_MSG = "Table '{name}' is not diagonally implicit"
_PAIR_STAGES_ERROR_MSG = (
    "Additive pair '{name}': explicit and implicit tables must have the same "
    "number of stages and abscissae"
)
_PAIR_EMPTY_ERROR_MSG = "Additive pair '{name}' must contain at least one table"

_ROW_SUM_TOL: Final[float] = 1e-8

TableKind = Literal["explicit", "implicit"]
IntegrationMode = Literal["imex", "explicit", "implicit"]

FloatArray = NDArray[np.floating[Any]]


# =============================================================================
# Containers
# =============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class ButcherTable:
    """Coefficients of one Runge-Kutta method.

    Attributes:
        name: Human-readable table name.
        a: Stage coefficient matrix, shape (s, s).
        b: Solution weights, shape (s,).
        c: Stage abscissae, shape (s,).
        order: Order of the solution weights.
        d: Optional embedded weights for error estimation, shape (s,).
        embedded_order: Order of the embedded weights.
    """

    name: str
    a: FloatArray
    b: FloatArray
    c: FloatArray
    order: int
    d: FloatArray | None = None
    embedded_order: int | None = None

    def __post_init__(self) -> None:
        """Convert coefficients to float arrays and validate their structure.

        Raises:
            ValueError: If the coefficients are inconsistent.
        """
        a = np.array(self.a, dtype=np.float64, ndmin=2)
        b = np.array(self.b, dtype=np.float64).reshape(-1)
        c = np.array(self.c, dtype=np.float64).reshape(-1)
        d = None if self.d is None else np.array(self.d, dtype=np.float64).reshape(-1)

        if a.shape[0] != a.shape[1]:
            raise ValueError(_A_SQUARE_ERROR_MSG.format(name=self.name, shape=a.shape))
        s = a.shape[0]
        for vec_name, vec in (("b", b), ("c", c), ("d", d)):
            if vec is not None and vec.size != s:
                raise ValueError(
                    _LENGTH_ERROR_MSG.format(
                        name=self.name, vec=vec_name, actual=vec.size, expected=s
                    )
                )
        if np.any(np.triu(a, k=1) != 0.0):
            raise ValueError(_LOWER_TRIANGULAR_ERROR_MSG.format(name=self.name))

        row_diff = float(np.max(np.abs(a.sum(axis=1) - c)))
        if row_diff > _ROW_SUM_TOL:
            raise ValueError(_ROW_SUM_ERROR_MSG.format(name=self.name, diff=row_diff))

        if int(self.order) < 1:
            raise ValueError(_ORDER_ERROR_MSG.format(name=self.name, order=self.order))
        if d is not None and self.embedded_order is None:
            raise ValueError(_EMBEDDED_ORDER_ERROR_MSG.format(name=self.name))

        for arr in (a, b, c, d):
            if arr is not None:
                arr.flags.writeable = False

        object.__setattr__(self, "a", a)
        object.__setattr__(self, "b", b)
        object.__setattr__(self, "c", c)
        object.__setattr__(self, "d", d)
        object.__setattr__(self, "order", int(self.order))

    @property
    def stages(self) -> int:
        """Number of stages s."""
        return int(self.a.shape[0])

    @property
    def has_embedding(self) -> bool:
        """True if embedded weights are available for error estimation."""
        return self.d is not None

    @property
    def is_explicit(self) -> bool:
        """True if a is strictly lower-triangular."""
        return not bool(np.any(np.diag(self.a) != 0.0))

    def require_explicit(self) -> None:
        """Raise ValueError unless the table is explicit."""
        if not self.is_explicit:
            raise ValueError(_NOT_EXPLICIT_ERROR_MSG.format(name=self.name))

    def require_diagonally_implicit(self) -> None:
        """Raise ValueError unless some diagonal coefficient is nonzero."""
        if self.is_explicit:
            raise ValueError(_NOT_DIRK_ERROR_MSG.format(name=self.name))


@dataclass(frozen=True, slots=True, eq=False)
class AdditiveButcherTable:
    """An explicit and/or a diagonally implicit table applied additively.

    Attributes:
        name: Human-readable pair name.
        explicit: Table applied to the explicit tendency, or None.
        implicit: Table applied to the implicit tendency, or None.
    """

    name: str
    explicit: ButcherTable | None = None
    implicit: ButcherTable | None = None
    _c: FloatArray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate that both parts share stage count and abscissae.

        Raises:
            ValueError: If the pair is empty or the tables are incompatible.
        """
        if self.explicit is None and self.implicit is None:
            raise ValueError(_PAIR_EMPTY_ERROR_MSG.format(name=self.name))
        if self.explicit is not None:
            self.explicit.require_explicit()
        if self.explicit is not None and self.implicit is not None:
            same_stages = self.explicit.stages == self.implicit.stages
            if not same_stages or not np.allclose(
                self.explicit.c, self.implicit.c, rtol=0.0, atol=_ROW_SUM_TOL
            ):
                raise ValueError(_PAIR_STAGES_ERROR_MSG.format(name=self.name))

        ref = self.explicit if self.explicit is not None else self.implicit
        object.__setattr__(self, "_c", ref.c)  # type: ignore[union-attr]

    @property
    def stages(self) -> int:
        """Number of stages s."""
        return int(self._c.size)

    @property
    def c(self) -> FloatArray:
        """Shared stage abscissae."""
        return self._c

    @property
    def order(self) -> int:
        """Order of the combined method (minimum over present parts)."""
        return min(t.order for t in (self.explicit, self.implicit) if t is not None)

    @property
    def has_embedding(self) -> bool:
        """True if every present part carries embedded weights."""
        return all(
            t.has_embedding for t in (self.explicit, self.implicit) if t is not None
        )

    @property
    def embedded_order(self) -> int | None:
        """Order of the embedding (minimum over present parts), or None."""
        if not self.has_embedding:
            return None
        return min(
            int(t.embedded_order)  # type: ignore[arg-type]
            for t in (self.explicit, self.implicit)
            if t is not None
        )


# =============================================================================
# ARS(3,4,3): fixed coefficients for the hand-coded IMEX scheme
# =============================================================================

#: Diagonal coefficient of the implicit part (root of 6g^3 - 18g^2 + 9g - 1).
ARS343_GAMMA: Final[float] = 0.4358665215084590
#: Shared value of the explicit coefficients a42 and a43.
ARS343_DELTA: Final[float] = 0.5529291480359398

_G = ARS343_GAMMA

ARS343_B1: Final[float] = -1.5 * _G * _G + 4.0 * _G - 0.25
ARS343_B2: Final[float] = 1.5 * _G * _G - 5.0 * _G + 1.25

ARS343_A42: Final[float] = ARS343_DELTA
ARS343_A43: Final[float] = ARS343_DELTA
ARS343_A31: Final[float] = (
    (1.0 - 4.5 * _G + 1.5 * _G * _G) * ARS343_A42
    + (2.75 - 10.5 * _G + 3.75 * _G * _G) * ARS343_A43
    - 3.5
    + 13.0 * _G
    - 4.5 * _G * _G
)
ARS343_A32: Final[float] = (
    (-1.0 + 4.5 * _G - 1.5 * _G * _G) * ARS343_A42
    + (-2.75 + 10.5 * _G - 3.75 * _G * _G) * ARS343_A43
    + 4.0
    - 12.5 * _G
    + 4.5 * _G * _G
)
ARS343_A41: Final[float] = 1.0 - ARS343_A42 - ARS343_A43

#: Stage times as fractions of the step (stages 1..3; stage 0 sits at t_n).
ARS343_TIME_FRACTIONS: Final[tuple[float, float, float]] = (_G, 0.5 * (1.0 + _G), 1.0)

ARS343_EXPLICIT_A: Final[FloatArray] = np.array(
    [
        [0.0, 0.0, 0.0, 0.0],
        [_G, 0.0, 0.0, 0.0],
        [ARS343_A31, ARS343_A32, 0.0, 0.0],
        [ARS343_A41, ARS343_A42, ARS343_A43, 0.0],
    ]
)
ARS343_IMPLICIT_A: Final[FloatArray] = np.array(
    [
        [0.0, 0.0, 0.0, 0.0],
        [0.0, _G, 0.0, 0.0],
        [0.0, 0.5 * (1.0 - _G), _G, 0.0],
        [0.0, ARS343_B1, ARS343_B2, _G],
    ]
)
ARS343_WEIGHTS: Final[FloatArray] = np.array([0.0, ARS343_B1, ARS343_B2, _G])
ARS343_C: Final[FloatArray] = np.array([0.0, *ARS343_TIME_FRACTIONS])

for _arr in (ARS343_EXPLICIT_A, ARS343_IMPLICIT_A, ARS343_WEIGHTS, ARS343_C):
    _arr.flags.writeable = False


# =============================================================================
# Integrator-known tables (ARKode numbering)
# =============================================================================

HEUN_EULER_2_1_2: Final[int] = 0
BOGACKI_SHAMPINE_4_2_3: Final[int] = 1
ARK324L2SA_ERK_4_2_3: Final[int] = 2
ZONNEVELD_5_3_4: Final[int] = 3
SDIRK_2_1_2: Final[int] = 12
TRBDF2_3_3_2: Final[int] = 14
ARK324L2SA_DIRK_4_2_3: Final[int] = 16

#: Default table per integration mode.
DEFAULT_TABLE_IDS: Final[dict[str, int]] = {
    "explicit": ZONNEVELD_5_3_4,
    "implicit": ARK324L2SA_DIRK_4_2_3,
    "imex": ARK324L2SA_DIRK_4_2_3,
}

#: IMEX pairs keyed by the ID that selects them: (explicit ID, implicit ID).
IMEX_PAIRS: Final[dict[int, tuple[int, int]]] = {
    ARK324L2SA_DIRK_4_2_3: (ARK324L2SA_ERK_4_2_3, ARK324L2SA_DIRK_4_2_3),
}


def _ark324_tables() -> tuple[ButcherTable, ButcherTable]:
    gamma = 1767732205903.0 / 4055673282236.0
    c = [0.0, 1767732205903.0 / 2027836641118.0, 0.6, 1.0]
    b = [
        1471266399579.0 / 7840856788654.0,
        -4482444167858.0 / 7529755066697.0,
        11266239266428.0 / 11593286722821.0,
        gamma,
    ]
    d = [
        2756255671327.0 / 12835298489170.0,
        -10771552573575.0 / 22201958757719.0,
        9247589265047.0 / 10645013368117.0,
        2193209047091.0 / 5459859503100.0,
    ]
    a_exp = [
        [0.0, 0.0, 0.0, 0.0],
        [c[1], 0.0, 0.0, 0.0],
        [
            5535828885825.0 / 10492691773637.0,
            788022342437.0 / 10882634858940.0,
            0.0,
            0.0,
        ],
        [
            6485989280629.0 / 16251701735622.0,
            -4246266847089.0 / 9704473918619.0,
            10755448449292.0 / 10357097424841.0,
            0.0,
        ],
    ]
    a_imp = [
        [0.0, 0.0, 0.0, 0.0],
        [gamma, gamma, 0.0, 0.0],
        [
            2746238789719.0 / 10658868560708.0,
            -640167445237.0 / 6845629431997.0,
            gamma,
            0.0,
        ],
        b,
    ]
    erk = ButcherTable(
        name="ARK324L2SA-ERK-4-2-3",
        a=np.array(a_exp),
        b=np.array(b),
        c=np.array(c),
        order=3,
        d=np.array(d),
        embedded_order=2,
    )
    dirk = ButcherTable(
        name="ARK324L2SA-DIRK-4-2-3",
        a=np.array(a_imp),
        b=np.array(b),
        c=np.array(c),
        order=3,
        d=np.array(d),
        embedded_order=2,
    )
    return erk, dirk


def _build_named_tables() -> dict[int, ButcherTable]:
    erk324, dirk324 = _ark324_tables()
    r2 = sqrt(2.0)
    trbdf2_g = 2.0 - r2

    return {
        HEUN_EULER_2_1_2: ButcherTable(
            name="HEUN-EULER-2-1-2",
            a=np.array([[0.0, 0.0], [1.0, 0.0]]),
            b=np.array([0.5, 0.5]),
            c=np.array([0.0, 1.0]),
            order=2,
            d=np.array([1.0, 0.0]),
            embedded_order=1,
        ),
        BOGACKI_SHAMPINE_4_2_3: ButcherTable(
            name="BOGACKI-SHAMPINE-4-2-3",
            a=np.array(
                [
                    [0.0, 0.0, 0.0, 0.0],
                    [0.5, 0.0, 0.0, 0.0],
                    [0.0, 0.75, 0.0, 0.0],
                    [2.0 / 9.0, 1.0 / 3.0, 4.0 / 9.0, 0.0],
                ]
            ),
            b=np.array([2.0 / 9.0, 1.0 / 3.0, 4.0 / 9.0, 0.0]),
            c=np.array([0.0, 0.5, 0.75, 1.0]),
            order=3,
            d=np.array([7.0 / 24.0, 0.25, 1.0 / 3.0, 0.125]),
            embedded_order=2,
        ),
        ARK324L2SA_ERK_4_2_3: erk324,
        ZONNEVELD_5_3_4: ButcherTable(
            name="ZONNEVELD-5-3-4",
            a=np.array(
                [
                    [0.0, 0.0, 0.0, 0.0, 0.0],
                    [0.5, 0.0, 0.0, 0.0, 0.0],
                    [0.0, 0.5, 0.0, 0.0, 0.0],
                    [0.0, 0.0, 1.0, 0.0, 0.0],
                    [5.0 / 32.0, 7.0 / 32.0, 13.0 / 32.0, -1.0 / 32.0, 0.0],
                ]
            ),
            b=np.array([1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0, 0.0]),
            c=np.array([0.0, 0.5, 0.5, 1.0, 0.75]),
            order=4,
            d=np.array([-0.5, 7.0 / 3.0, 7.0 / 3.0, 13.0 / 6.0, -16.0 / 3.0]),
            embedded_order=3,
        ),
        SDIRK_2_1_2: ButcherTable(
            name="SDIRK-2-1-2",
            a=np.array([[1.0, 0.0], [-1.0, 1.0]]),
            b=np.array([0.5, 0.5]),
            c=np.array([1.0, 0.0]),
            order=2,
            d=np.array([1.0, 0.0]),
            embedded_order=1,
        ),
        TRBDF2_3_3_2: ButcherTable(
            name="TRBDF2-3-3-2",
            a=np.array(
                [
                    [0.0, 0.0, 0.0],
                    [0.5 * trbdf2_g, 0.5 * trbdf2_g, 0.0],
                    [0.25 * r2, 0.25 * r2, 0.5 * trbdf2_g],
                ]
            ),
            b=np.array([0.25 * r2, 0.25 * r2, 0.5 * trbdf2_g]),
            c=np.array([0.0, trbdf2_g, 1.0]),
            order=2,
            d=np.array(
                [
                    (1.0 - 0.25 * r2) / 3.0,
                    (0.75 * r2 + 1.0) / 3.0,
                    trbdf2_g / 6.0,
                ]
            ),
            embedded_order=3,
        ),
        ARK324L2SA_DIRK_4_2_3: dirk324,
    }


NAMED_TABLES: Final[dict[int, ButcherTable]] = _build_named_tables()

EXPLICIT_TABLE_IDS: Final[frozenset[int]] = frozenset(
    k for k, t in NAMED_TABLES.items() if t.is_explicit
)
IMPLICIT_TABLE_IDS: Final[frozenset[int]] = frozenset(
    k for k, t in NAMED_TABLES.items() if not t.is_explicit
)


def valid_table_ids(mode: IntegrationMode) -> tuple[int, ...]:
    """Return the table IDs accepted in a given integration mode."""
    if mode == "explicit":
        return tuple(sorted(EXPLICIT_TABLE_IDS))
    if mode == "implicit":
        return tuple(sorted(IMPLICIT_TABLE_IDS))
    return tuple(sorted(IMEX_PAIRS))


def resolve_named_table(table_id: int, mode: IntegrationMode) -> AdditiveButcherTable:
    """Resolve an integrator-known table ID for an integration mode.

    Args:
        table_id: ARKode table number.
        mode: "imex", "explicit" or "implicit".

    Raises:
        ConfigurationError: If the ID is unknown or not valid for the mode.

    Returns:
        AdditiveButcherTable holding the part(s) required by the mode.
    """
    allowed = valid_table_ids(mode)
    if table_id not in allowed:
        raise_configuration_error(
            scheme="ARKode",
            invalid=["butcher_table"],
            detail=(
                f"Unknown Butcher table ID {table_id} for mode '{mode}'. "
                f"Valid IDs: {list(allowed)}."
            ),
        )

    if mode == "explicit":
        table = NAMED_TABLES[table_id]
        return AdditiveButcherTable(name=table.name, explicit=table)
    if mode == "implicit":
        table = NAMED_TABLES[table_id]
        return AdditiveButcherTable(name=table.name, implicit=table)

    exp_id, imp_id = IMEX_PAIRS[table_id]
    return AdditiveButcherTable(
        name=NAMED_TABLES[imp_id].name.replace("-DIRK", ""),
        explicit=NAMED_TABLES[exp_id],
        implicit=NAMED_TABLES[imp_id],
    )


# =============================================================================
# Custom IMEX presets (no embedding: fixed-step only)
# =============================================================================


def _ars232() -> AdditiveButcherTable:
    gamma = 1.0 - 1.0 / sqrt(2.0)
    delta = -2.0 * sqrt(2.0) / 3.0
    c = np.array([0.0, gamma, 1.0])
    b = np.array([0.0, 1.0 - gamma, gamma])
    explicit = ButcherTable(
        name="ARS232-explicit",
        a=np.array([[0.0, 0.0, 0.0], [gamma, 0.0, 0.0], [delta, 1.0 - delta, 0.0]]),
        b=b,
        c=c,
        order=2,
    )
    implicit = ButcherTable(
        name="ARS232-implicit",
        a=np.array([[0.0, 0.0, 0.0], [0.0, gamma, 0.0], [0.0, 1.0 - gamma, gamma]]),
        b=b,
        c=c,
        order=2,
    )
    return AdditiveButcherTable(name="ARS232", explicit=explicit, implicit=implicit)


def _ars343() -> AdditiveButcherTable:
    explicit = ButcherTable(
        name="ARS343-explicit",
        a=ARS343_EXPLICIT_A,
        b=ARS343_WEIGHTS,
        c=ARS343_C,
        order=3,
    )
    implicit = ButcherTable(
        name="ARS343-implicit",
        a=ARS343_IMPLICIT_A,
        b=ARS343_WEIGHTS,
        c=ARS343_C,
        order=3,
    )
    return AdditiveButcherTable(name="ARS343", explicit=explicit, implicit=implicit)


def _ars443() -> AdditiveButcherTable:
    c = np.array([0.0, 0.5, 2.0 / 3.0, 0.5, 1.0])
    explicit = ButcherTable(
        name="ARS443-explicit",
        a=np.array(
            [
                [0.0, 0.0, 0.0, 0.0, 0.0],
                [0.5, 0.0, 0.0, 0.0, 0.0],
                [11.0 / 18.0, 1.0 / 18.0, 0.0, 0.0, 0.0],
                [5.0 / 6.0, -5.0 / 6.0, 0.5, 0.0, 0.0],
                [0.25, 1.75, 0.75, -1.75, 0.0],
            ]
        ),
        b=np.array([0.25, 1.75, 0.75, -1.75, 0.0]),
        c=c,
        order=3,
    )
    implicit = ButcherTable(
        name="ARS443-implicit",
        a=np.array(
            [
                [0.0, 0.0, 0.0, 0.0, 0.0],
                [0.0, 0.5, 0.0, 0.0, 0.0],
                [0.0, 1.0 / 6.0, 0.5, 0.0, 0.0],
                [0.0, -0.5, 0.5, 0.5, 0.0],
                [0.0, 1.5, -1.5, 0.5, 0.5],
            ]
        ),
        b=np.array([0.0, 1.5, -1.5, 0.5, 0.5]),
        c=c,
        order=3,
    )
    return AdditiveButcherTable(name="ARS443", explicit=explicit, implicit=implicit)


CUSTOM_PRESETS: Final[dict[str, Any]] = {
    "ars232": _ars232,
    "ars343": _ars343,
    "ars443": _ars443,
}


def custom_preset(name: str) -> AdditiveButcherTable:
    """Return a built-in custom IMEX table by name.

    Args:
        name: Preset name ("ars232", "ars343" or "ars443").

    Raises:
        ConfigurationError: If the preset is unknown.

    Returns:
        The preset additive table.
    """
    key = str(name).strip().lower()
    builder = CUSTOM_PRESETS.get(key)
    if builder is None:
        raise_configuration_error(
            scheme="ARKode",
            invalid=["custom_table"],
            detail=f"Unknown custom table preset '{name}'. "
            f"Valid presets: {sorted(CUSTOM_PRESETS)}.",
        )
    return builder()  # type: ignore[no-any-return]


# =============================================================================
# Explicit RK presets for the simple schemes
# =============================================================================


def _explicit_presets() -> dict[str, ButcherTable]:
    return {
        "euler": ButcherTable(
            name="forward-euler",
            a=np.array([[0.0]]),
            b=np.array([1.0]),
            c=np.array([0.0]),
            order=1,
        ),
        "heun": ButcherTable(
            name="heun",
            a=np.array([[0.0, 0.0], [1.0, 0.0]]),
            b=np.array([0.5, 0.5]),
            c=np.array([0.0, 1.0]),
            order=2,
        ),
        "ssprk3": ButcherTable(
            name="ssprk3",
            a=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.25, 0.25, 0.0]]),
            b=np.array([1.0 / 6.0, 1.0 / 6.0, 2.0 / 3.0]),
            c=np.array([0.0, 1.0, 0.5]),
            order=3,
        ),
        "rk4": ButcherTable(
            name="rk4",
            a=np.array(
                [
                    [0.0, 0.0, 0.0, 0.0],
                    [0.5, 0.0, 0.0, 0.0],
                    [0.0, 0.5, 0.0, 0.0],
                    [0.0, 0.0, 1.0, 0.0],
                ]
            ),
            b=np.array([1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0]),
            c=np.array([0.0, 0.5, 0.5, 1.0]),
            order=4,
        ),
    }


EXPLICIT_PRESETS: Final[dict[str, ButcherTable]] = _explicit_presets()


def explicit_preset(name: str) -> ButcherTable:
    """Return an explicit RK preset by name.

    Args:
        name: "euler", "heun", "ssprk3" or "rk4".

    Raises:
        ConfigurationError: If the preset is unknown.

    Returns:
        The explicit Butcher table.
    """
    key = str(name).strip().lower()
    table = EXPLICIT_PRESETS.get(key)
    if table is None:
        raise_configuration_error(
            scheme="explicit RK",
            invalid=["table"],
            detail=f"Unknown explicit RK preset '{name}'. "
            f"Valid presets: {sorted(EXPLICIT_PRESETS)}.",
        )
    return table  # type: ignore[return-value]
