"""Prediction-market resolution and AMM pricing engine."""
