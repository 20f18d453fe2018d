"""Result post-processing: id enrichment, column labels, charts, analysis."""
