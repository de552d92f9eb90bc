from typing import Optional

import pandas as pd
import matplotlib.pyplot as plt
import matplotlib as mpl


def plot_titres(
    df: pd.DataFrame, ax: Optional[mpl.axes.Axes] = None, **kwds
) -> mpl.axes.Axes:
    """
    Plot titres against measured strain, with a line for each blood sample.

    Args:
        df: DataFrame with samples, virus, titre and run columns, like the output of
            titreboost.simulation.simulate_individual.
        ax: Matplotlib ax.
        **kwds: Passed to ax.plot.
    """
    ax = plt.gca() if ax is None else ax
    multiple_runs = df["run"].nunique() > 1

    for (sample, run), group in df.groupby(["samples", "run"]):
        label = f"{sample:g} ({run})" if multiple_runs else f"{sample:g}"
        group = group.sort_values("virus")
        ax.plot(group["virus"], group["titre"], label=label, **kwds)

    ax.set_xlabel("Strain")
    ax.set_ylabel("Titre")
    ax.legend(title="Sample")
    return ax
