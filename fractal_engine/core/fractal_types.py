"""
Fractal parameter definitions.

Parameters are a tagged union keyed by ``FractalKind``: every variant is a
plain dataclass carrying the shared view fields (zoom, center, iteration cap,
escape radius) plus its own payload. Kernels dispatch on the ``kind`` tag, so
variants carry data only.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple, Type, Union
import logging

logger = logging.getLogger(__name__)


class FractalKind(str, Enum):
    """Supported fractal families."""

    MANDELBROT = "mandelbrot"
    JULIA = "julia"
    BURNING_SHIP = "burning-ship"
    NEWTON = "newton"

    @classmethod
    def parse(cls, value: Union[str, "FractalKind"]) -> "FractalKind":
        """Accept enum members, canonical names and underscore spellings."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        try:
            return cls(normalized)
        except ValueError:
            available = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown fractal kind '{value}'. Available: {available}") from None


@dataclass(frozen=True)
class Complex:
    """Immutable complex value; every operation returns a new instance."""

    real: float
    imag: float

    def __add__(self, other: "Complex") -> "Complex":
        return Complex(self.real + other.real, self.imag + other.imag)

    def __sub__(self, other: "Complex") -> "Complex":
        return Complex(self.real - other.real, self.imag - other.imag)

    def __mul__(self, other: "Complex") -> "Complex":
        return Complex(
            self.real * other.real - self.imag * other.imag,
            self.real * other.imag + self.imag * other.real,
        )

    def __truediv__(self, other: "Complex") -> "Complex":
        denominator = other.real * other.real + other.imag * other.imag
        if denominator == 0:
            raise ZeroDivisionError("complex division by zero")
        return Complex(
            (self.real * other.real + self.imag * other.imag) / denominator,
            (self.imag * other.real - self.real * other.imag) / denominator,
        )

    def __abs__(self) -> float:
        return self.magnitude()

    def magnitude(self) -> float:
        return math.sqrt(self.magnitude_squared())

    def magnitude_squared(self) -> float:
        return self.real * self.real + self.imag * self.imag

    def conjugate(self) -> "Complex":
        return Complex(self.real, -self.imag)

    def power(self, n: float) -> "Complex":
        """Raise to a real power using the polar form."""
        r = self.magnitude()
        theta = math.atan2(self.imag, self.real)
        r_pow = r ** n
        return Complex(r_pow * math.cos(n * theta), r_pow * math.sin(n * theta))

    def to_builtin(self) -> complex:
        return complex(self.real, self.imag)

    @classmethod
    def from_builtin(cls, value: complex) -> "Complex":
        return cls(float(value.real), float(value.imag))

    def to_dict(self) -> Dict[str, float]:
        return {"real": self.real, "imag": self.imag}

    @classmethod
    def from_any(cls, value: Any) -> "Complex":
        """Build from a Complex, builtin complex, (real, imag) pair or dict."""
        if isinstance(value, Complex):
            return value
        if isinstance(value, complex):
            return cls.from_builtin(value)
        if isinstance(value, dict):
            return cls(float(value["real"]), float(value["imag"]))
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return cls(float(value[0]), float(value[1]))
        if isinstance(value, (int, float)):
            return cls(float(value), 0.0)
        raise ValueError(f"Cannot interpret {value!r} as a complex number")


@dataclass(frozen=True)
class FractalParameters:
    """Fields shared by every fractal variant."""

    zoom: float = 1.0
    center_x: float = 0.0
    center_y: float = 0.0
    iterations: int = 100
    escape_radius: float = 4.0

    kind = None  # set by each variant

    def validate(self) -> None:
        """Validate parameter values."""
        if not self.zoom > 0:
            raise ValueError("zoom must be positive")
        if not isinstance(self.iterations, int) or self.iterations <= 0:
            raise ValueError("iterations must be a positive integer")
        if not self.escape_radius > 0:
            raise ValueError("escape_radius must be positive")
        for name in ("zoom", "center_x", "center_y", "escape_radius"):
            if not math.isfinite(getattr(self, name)):
                raise ValueError(f"{name} must be finite")

    def to_dict(self) -> Dict[str, Any]:
        """Convert parameters to a JSON-safe dictionary including the kind tag."""
        return {
            "kind": self.kind.value,
            "zoom": self.zoom,
            "center_x": self.center_x,
            "center_y": self.center_y,
            "iterations": self.iterations,
            "escape_radius": self.escape_radius,
        }


@dataclass(frozen=True)
class MandelbrotParameters(FractalParameters):
    """Mandelbrot set: z = z^2 + c with z0 = 0 and c the pixel."""

    kind = FractalKind.MANDELBROT


@dataclass(frozen=True)
class JuliaParameters(FractalParameters):
    """Julia set: z = z^2 + c with z0 the pixel and c fixed."""

    c: Complex = Complex(-0.7, 0.27015)

    kind = FractalKind.JULIA

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["c"] = self.c.to_dict()
        return data


@dataclass(frozen=True)
class BurningShipParameters(FractalParameters):
    """Burning Ship: Mandelbrot with absolute values folded in each step."""

    kind = FractalKind.BURNING_SHIP


@dataclass(frozen=True)
class NewtonParameters(FractalParameters):
    """Newton fractal for the polynomial whose roots are ``roots``."""

    tolerance: float = 1e-6
    roots: Tuple[Complex, ...] = field(default_factory=lambda: tuple(CUBE_ROOTS_OF_UNITY))

    kind = FractalKind.NEWTON

    def __post_init__(self):
        # Accept any sequence of complex-like values; store an immutable tuple.
        object.__setattr__(self, "roots", tuple(Complex.from_any(r) for r in self.roots))

    def validate(self) -> None:
        super().validate()
        if not self.tolerance > 0:
            raise ValueError("tolerance must be positive")
        if len(self.roots) == 0:
            raise ValueError("Newton fractal requires at least one root")

    def with_roots(self, roots: List[Any]) -> "NewtonParameters":
        """Return a copy with an edited root list."""
        data = self.to_dict()
        data["roots"] = roots
        return parameters_from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["tolerance"] = self.tolerance
        data["roots"] = [r.to_dict() for r in self.roots]
        return data


CUBE_ROOTS_OF_UNITY = (
    Complex(1.0, 0.0),
    Complex(-0.5, math.sqrt(3) / 2),
    Complex(-0.5, -math.sqrt(3) / 2),
)

_VARIANTS: Dict[FractalKind, Type[FractalParameters]] = {
    FractalKind.MANDELBROT: MandelbrotParameters,
    FractalKind.JULIA: JuliaParameters,
    FractalKind.BURNING_SHIP: BurningShipParameters,
    FractalKind.NEWTON: NewtonParameters,
}

_DESCRIPTIONS = {
    FractalKind.MANDELBROT: "Mandelbrot set: z_{n+1} = z_n^2 + c, z_0 = 0, c = pixel",
    FractalKind.JULIA: "Julia set: z_{n+1} = z_n^2 + c, z_0 = pixel, c fixed",
    FractalKind.BURNING_SHIP: "Burning Ship: z_{n+1} = (|Re(z_n)| + i|Im(z_n)|)^2 + c",
    FractalKind.NEWTON: "Newton fractal: z_{n+1} = z_n - f(z_n)/f'(z_n), f(z) = prod(z - r_i)",
}


def parameters_class(kind: Union[str, FractalKind]) -> Type[FractalParameters]:
    """Get the parameter dataclass for a fractal kind."""
    return _VARIANTS[FractalKind.parse(kind)]


def parameters_from_dict(data: Dict[str, Any]) -> FractalParameters:
    """
    Rebuild a parameter variant from its ``to_dict()`` form.

    Args:
        data: Dictionary with a ``kind`` tag plus field values

    Returns:
        The matching FractalParameters variant
    """
    data = dict(data)
    kind = FractalKind.parse(data.pop("kind"))
    if kind is FractalKind.JULIA and "c" in data:
        data["c"] = Complex.from_any(data["c"])
    if kind is FractalKind.NEWTON and "roots" in data:
        data["roots"] = tuple(Complex.from_any(r) for r in data["roots"])
    return _VARIANTS[kind](**data)


def create_parameters(kind: Union[str, FractalKind], **overrides) -> FractalParameters:
    """
    Create validated parameters for ``kind``, starting from its defaults.

    Args:
        kind: Fractal kind name or enum member
        **overrides: Field values replacing the defaults

    Returns:
        A validated FractalParameters variant
    """
    data = default_parameters(kind).to_dict()
    data.update(overrides)
    params = parameters_from_dict(data)
    params.validate()
    return params


def default_parameters(kind: Union[str, FractalKind]) -> FractalParameters:
    """Get default parameters for a fractal kind."""
    kind = FractalKind.parse(kind)
    if kind is FractalKind.MANDELBROT:
        return MandelbrotParameters(center_x=-0.75, center_y=0.0)
    if kind is FractalKind.JULIA:
        return JuliaParameters(center_x=0.0, center_y=0.0, c=Complex(-0.7, 0.27015))
    if kind is FractalKind.BURNING_SHIP:
        return BurningShipParameters(center_x=-0.5, center_y=-0.5)
    return NewtonParameters(center_x=0.0, center_y=0.0, tolerance=1e-6, roots=CUBE_ROOTS_OF_UNITY)


def list_fractals() -> Dict[str, str]:
    """Get a dictionary of fractal kinds and their descriptions."""
    return {kind.value: _DESCRIPTIONS[kind] for kind in FractalKind}


# Predefined interesting Julia set constants
JULIA_PRESETS = {
    'classic': Complex(-0.7, 0.27015),
    'dragon': Complex(-0.75, 0.1),
    'spiral': Complex(-0.4, 0.6),
    'dendrite': Complex(-0.235125, 0.827215),
    'lightning': Complex(-0.8, 0.156),
    'rabbit': Complex(-0.123, 0.745),
    'airplane': Complex(-1.25, 0.0),
    'san_marco': Complex(-0.75, 0.0),
    'siegel_disk': Complex(-0.391, -0.587),
}
