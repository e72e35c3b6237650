import matplotlib

# plots are written to files, never shown
matplotlib.use("Agg")
