"""Client-resident map layer: radius query, locality feed, exact filter, clustering."""
