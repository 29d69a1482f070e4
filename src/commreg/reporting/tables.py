"""
Table generation for communication regression reports.
"""

from pathlib import Path
from typing import Optional

import pandas as pd

from commreg.logging import get_logger
from commreg.models.bootstrap import PValueTable
from commreg.models.effects import EffectEstimate
from commreg.models.rank import DecompositionRanks, RankSelection

logger = get_logger()


class TableGenerator:
    """Generate and save result tables."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def create_rank_table(
        self,
        ranks: DecompositionRanks,
        selections: dict[str, RankSelection],
    ) -> pd.DataFrame:
        """One row per mode: size, selected rank, and variance captured."""
        records = [{
            "Mode": "covariate",
            "Size": ranks.covariate,
            "Rank": ranks.covariate,
            "Variance captured": None,
            "Top eigenvalue": None,
        }]

        for mode, selection in selections.items():
            records.append({
                "Mode": mode,
                "Size": len(selection.spectrum),
                "Rank": selection.rank,
                "Variance captured": float(selection.cumulative_ratio[selection.rank - 1]),
                "Top eigenvalue": float(selection.spectrum[0]),
            })

        return pd.DataFrame(records)

    def create_effects_table(
        self,
        effects: EffectEstimate,
        pvalues: Optional[PValueTable] = None,
    ) -> pd.DataFrame:
        """Every effect, joined with its p-values when available."""
        if pvalues is None:
            return effects.to_frame()
        return pvalues.to_frame()

    def create_top_effects_table(
        self,
        effects: EffectEstimate,
        pvalues: Optional[PValueTable] = None,
        top_n: int = 20,
    ) -> pd.DataFrame:
        """Largest effects by magnitude, formatted for display."""
        top = effects.top(top_n)
        records = []

        for (pair, sender, receiver), row in top.iterrows():
            record = {
                "Ligand-receptor": pair,
                "Sender": sender,
                "Receiver": receiver,
                "Effect": f"{row['effect']:.4f}",
            }
            if pvalues is not None:
                p = pvalues.table.loc[(pair, sender, receiver)]
                record["p-value"] = f"{p['p_value']:.4f}"
                record["q-value"] = f"{p['q_value']:.4f}"
            records.append(record)

        return pd.DataFrame(records)

    def save_table(
        self,
        df: pd.DataFrame,
        name: str,
        formats: Optional[list[str]] = None,
    ) -> list[Path]:
        """Save table in multiple formats."""
        paths = []

        for fmt in formats or ["tsv", "md"]:
            path = self.output_dir / f"{name}.{fmt}"

            if fmt == "tsv":
                df.to_csv(path, sep="\t", index=False)
            elif fmt == "csv":
                df.to_csv(path, index=False)
            elif fmt == "md":
                with open(path, "w") as f:
                    f.write(df.to_markdown(index=False))
            else:
                logger.warning(f"Unknown table format '{fmt}', skipping {name}")
                continue

            paths.append(path)

        return paths

    def generate_all_tables(
        self,
        ranks: DecompositionRanks,
        selections: dict[str, RankSelection],
        effects: EffectEstimate,
        pvalues: Optional[PValueTable] = None,
        top_n: int = 20,
        formats: Optional[list[str]] = None,
    ) -> dict[str, pd.DataFrame]:
        """Generate and save all standard tables."""
        tables = {}

        tables["ranks"] = self.create_rank_table(ranks, selections)
        self.save_table(tables["ranks"], "ranks", formats)

        tables["top_effects"] = self.create_top_effects_table(effects, pvalues, top_n)
        self.save_table(tables["top_effects"], "top_effects", formats)

        # Full key space is always written as TSV
        tables["effects"] = effects.to_frame()
        self.save_table(tables["effects"], "effects", ["tsv"])
        if pvalues is not None:
            tables["pvalues"] = self.create_effects_table(effects, pvalues)
            self.save_table(tables["pvalues"], "pvalues", ["tsv"])

        return tables
