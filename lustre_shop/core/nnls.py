"""
Non-negative least squares on premultiplied normal equations.

Both solves in the decomposition build AᵀA and Aᵀb directly; A itself
would be (millions of samples × unknowns), so the solver works on the
normal equations rather than on A.

This is the Lawson–Hanson active-set method: start with every variable
clamped to zero, repeatedly free the variable whose gradient most wants to
grow, solve the unconstrained problem over the free ("passive") set, and
step back toward the previous feasible point whenever that solution would
go negative.

Equality constraints are handled by augmenting the system with Lagrange
multipliers. The caller appends them as the last `equality_count` rows and
columns (constraint row in the lower-left, target in Aᵀb, zeros on the
diagonal block). Those variables are kept in the passive set from the start
and are free in sign; only the true variables are constrained to ≥ 0.
"""

import numpy as np


DEFAULT_TOLERANCE = 1e-12

# Cap on outer iterations; Lawson–Hanson terminates well before this
# for well-posed problems.
_MAX_ITERATIONS_FACTOR = 3


def _solve_passive(ata: np.ndarray, atb: np.ndarray, passive: np.ndarray) -> np.ndarray:
    """Solve the subsystem restricted to the passive set, zero elsewhere."""
    solution = np.zeros_like(atb)
    index = np.flatnonzero(passive)
    if index.size == 0:
        return solution

    sub_ata = ata[np.ix_(index, index)]
    sub_atb = atb[index]
    try:
        solution[index] = np.linalg.solve(sub_ata, sub_atb)
    except np.linalg.LinAlgError:
        # Rank-deficient subsystem (e.g. two identical basis columns):
        # take the minimum-norm least-squares solution instead.
        solution[index] = np.linalg.lstsq(sub_ata, sub_atb, rcond=None)[0]
    return solution


def solve_premultiplied(ata: np.ndarray, atb: np.ndarray,
                        tolerance: float = DEFAULT_TOLERANCE,
                        equality_count: int = 0) -> np.ndarray:
    """
    Minimize |Ax − b|² subject to x ≥ 0, given AᵀA and Aᵀb.

    Args:
        ata:            (n, n) symmetric matrix AᵀA (augmented if constrained).
        atb:            (n,) vector Aᵀb (augmented if constrained).
        tolerance:      gradient threshold below which no variable is freed.
        equality_count: number of trailing Lagrange-multiplier variables.

    Returns:
        (n,) float64 solution. The first n − equality_count entries are ≥ 0;
        the trailing multipliers are returned unchanged in sign.
    """
    ata = np.asarray(ata, dtype=np.float64)
    atb = np.asarray(atb, dtype=np.float64)
    n = atb.shape[0]
    if ata.shape != (n, n):
        raise ValueError(f"AᵀA shape {ata.shape} does not match Aᵀb length {n}")

    constrained = n - equality_count
    if constrained < 0:
        raise ValueError("More equality constraints than variables")

    # The gradient threshold scales with the right-hand side so the same
    # tolerance works for radiance-scale and unit-scale systems.
    threshold = tolerance * max(1.0, float(np.max(np.abs(atb), initial=0.0)))

    passive = np.zeros(n, dtype=bool)
    passive[constrained:] = True
    x = np.zeros(n, dtype=np.float64)

    max_iterations = _MAX_ITERATIONS_FACTOR * max(n, 1)
    for _ in range(max_iterations):
        # Gradient of −½|Ax − b|² : w = Aᵀb − AᵀA x.
        gradient = atb - ata @ x
        candidates = ~passive[:constrained] & (gradient[:constrained] > threshold)
        if not candidates.any():
            break

        # Free the variable with the largest gradient among the active ones.
        masked = np.where(candidates, gradient[:constrained], -np.inf)
        passive[int(np.argmax(masked))] = True

        # Inner loop: step back toward the last feasible point while the
        # passive solution has non-positive constrained entries. Each pass
        # returns at least one variable to the active set.
        while True:
            z = _solve_passive(ata, atb, passive)
            infeasible = passive[:constrained] & (z[:constrained] <= 0.0)
            if not infeasible.any():
                x = z
                break

            # Largest step from x toward z that keeps every passive variable
            # non-negative; the variable that reaches zero first limits it.
            delta = x[:constrained] - z[:constrained]
            with np.errstate(divide="ignore", invalid="ignore"):
                ratios = np.where(infeasible & (delta > 0.0),
                                  x[:constrained] / delta, np.inf)
            limiting = int(np.argmin(ratios))
            alpha = min(float(ratios[limiting]), 1.0)
            # Interpolate; alpha < 1 lands exactly on the limiting variable.
            x = x + alpha * (z - x)

            # Pivot: passive variables that reached zero return to the active
            # set. With no finite ratio, every infeasible entry goes back.
            hit_zero = passive[:constrained] & (x[:constrained] <= threshold)
            if np.isfinite(ratios[limiting]):
                hit_zero[limiting] = True
            else:
                hit_zero |= infeasible
            passive[:constrained][hit_zero] = False
            x[:constrained][hit_zero] = 0.0

    # Round-off from the passive solves can leave tiny negatives.
    x[:constrained] = np.maximum(x[:constrained], 0.0)
    return x


def augment_sum_constraint(ata: np.ndarray, atb: np.ndarray,
                           total: float = 1.0):
    """
    Append a "Σ x = total" equality constraint to a normal-equations system.

    Returns the augmented (n + 1, n + 1) matrix and (n + 1,) vector; the last
    entry of the solution is the Lagrange multiplier.
    """
    n = atb.shape[0]
    augmented = np.zeros((n + 1, n + 1), dtype=np.float64)
    augmented[:n, :n] = ata
    augmented[n, :n] = 1.0
    augmented[:n, n] = 1.0

    rhs = np.zeros(n + 1, dtype=np.float64)
    rhs[:n] = atb
    rhs[n] = total
    return augmented, rhs
