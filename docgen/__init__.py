"""Document generation pipeline: literature mining, chained chapter generation, finalization."""
