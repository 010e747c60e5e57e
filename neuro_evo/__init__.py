"""
Neuro-Evo: Generational Neuroevolution of Simple Walkers

A population of agents, each driven by a small feed-forward policy network,
walks a bounded arena. Elitism plus tournament selection over network weights
rewards the ones that cover the most ground.
"""

__version__ = "0.1.0"
